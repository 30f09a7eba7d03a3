from sqlalchemy import (
    Column, Text, Integer, Float, Numeric, Date, DateTime, Index, text
)
from sqlalchemy.dialects.postgresql import JSONB, ARRAY
from datetime import datetime
from models.base import Base


class Listing(Base):
    """
    Replicated listing (one row per upstream ListingKey).

    Column groups follow the upstream record layout:
    - Location and geolocation
    - Structural details, dimensions and room counts
    - Feature arrays (TEXT[] for containment queries)
    - Commercial and financial data
    - Media pointers, cached from listing_media by the reconciliation pass
    - Textual remarks, important dates, lifecycle/system fields

    The complete upstream payload is kept in ``raw`` so that fields without a
    dedicated column remain queryable (media change detection reads it).
    """
    __tablename__ = "listings"

    # Immutable upstream ListingKey
    id = Column(Text, primary_key=True)

    # Location data
    unparsed_address = Column(Text, nullable=True)
    street_number = Column(Text, nullable=True)
    street_name = Column(Text, nullable=True)
    street_suffix = Column(Text, nullable=True)
    unit_number = Column(Text, nullable=True)
    city = Column(Text, nullable=True, index=True)
    province = Column(Text, nullable=True, index=True)
    postal_code = Column(Text, nullable=True, index=True)
    country = Column(Text, nullable=True)
    county_or_parish = Column(Text, nullable=True)

    # Geolocation
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    geo_source = Column(Text, nullable=True)

    # Property details
    property_type = Column(Text, nullable=True, index=True)
    property_sub_type = Column(Text, nullable=True)
    transaction_type = Column(Text, nullable=True)
    contract_status = Column(Text, nullable=True)
    building_name = Column(Text, nullable=True)
    year_built = Column(Integer, nullable=True)

    # Dimensions and areas
    lot_size_area = Column(Float, nullable=True)
    lot_size_units = Column(Text, nullable=True)
    living_area = Column(Float, nullable=True)
    above_grade_finished_area = Column(Float, nullable=True)
    below_grade_finished_area = Column(Float, nullable=True)
    lot_width = Column(Float, nullable=True)
    lot_depth = Column(Float, nullable=True)
    lot_frontage = Column(Text, nullable=True)

    # Room counts
    bedrooms_total = Column(Integer, nullable=True)
    bedrooms_above_grade = Column(Integer, nullable=True)
    bedrooms_below_grade = Column(Integer, nullable=True)
    bathrooms_total = Column(Integer, nullable=True)
    kitchens_total = Column(Integer, nullable=True)
    rooms_total = Column(Integer, nullable=True)

    # Features
    interior_features = Column(ARRAY(Text), nullable=True)
    exterior_features = Column(ARRAY(Text), nullable=True)
    parking_features = Column(ARRAY(Text), nullable=True)
    water_features = Column(ARRAY(Text), nullable=True)

    # Commercial-specific
    zoning = Column(Text, nullable=True)
    business_type = Column(ARRAY(Text), nullable=True)

    # Financial data
    list_price = Column(Numeric, nullable=True, index=True)
    original_list_price = Column(Numeric, nullable=True)
    close_price = Column(Numeric, nullable=True)
    association_fee = Column(Numeric, nullable=True)
    tax_annual_amount = Column(Numeric, nullable=True)
    tax_year = Column(Integer, nullable=True)

    # Media pointers (owned by the media reconciliation pass)
    media_keys = Column(ARRAY(Text), nullable=True, server_default=text("'{}'"))
    preferred_media_key = Column(Text, nullable=True)
    virtual_tour_url = Column(Text, nullable=True)

    # Textual information
    public_remarks = Column(Text, nullable=True)
    private_remarks = Column(Text, nullable=True)
    tax_legal_description = Column(Text, nullable=True)
    directions = Column(Text, nullable=True)

    # Important dates
    list_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    close_date = Column(Date, nullable=True)

    # System fields
    standard_status = Column(Text, nullable=True, index=True)
    modification_timestamp = Column(DateTime, nullable=True, index=True)
    originating_system_id = Column(Text, nullable=True)
    originating_system_name = Column(Text, nullable=True)

    # Complete upstream payload
    raw = Column(JSONB, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, server_default=text("now()"))
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, server_default=text("now()"))

    __table_args__ = (
        Index("idx_listings_status_price", "standard_status", "list_price"),
    )
