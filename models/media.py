from sqlalchemy import (
    Column, Text, Integer, Boolean, DateTime, ForeignKey, Index, text
)
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base


class ListingMedia(Base):
    """
    Media item attached to a listing, keyed by the upstream MediaKey.

    Rows are only written when the parent listing already exists; the
    foreign key cascades deletes from listings.
    """
    __tablename__ = "listing_media"

    media_key = Column(Text, primary_key=True)
    listing_id = Column(
        Text,
        ForeignKey("listings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Media properties
    media_type = Column(Text, nullable=True)
    media_category = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)
    media_status = Column(Text, nullable=True)
    image_height = Column(Integer, nullable=True)
    image_width = Column(Integer, nullable=True)
    is_preferred = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    display_order = Column(Integer, nullable=True)
    short_description = Column(Text, nullable=True)

    # Timestamps
    modification_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, server_default=text("now()"))
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, server_default=text("now()"))

    listing = relationship("Listing")

    __table_args__ = (
        Index("idx_listing_media_preferred", "listing_id", "is_preferred"),
    )
