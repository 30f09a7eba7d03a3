from sqlalchemy import Column, Integer, String, DateTime, BigInteger, text
from datetime import datetime
from models.base import Base

SENTINEL_TIMESTAMP = "1970-01-01T00:00:00Z"
SENTINEL_KEY = "0"


class ReplicationCheckpoint(Base):
    """
    Tracks the replication cursor per upstream resource.

    Purpose:
    - Resume replication from the last durably applied record
    - Avoid reprocessing old data

    Design:
    - One row per resource ("Property", "Media")
    - (last_timestamp, last_key) is the watermark, ordered the same way
      upstream orders records (ModificationTimestamp, then key)
    - Rows start at the epoch-zero sentinel and are only reset manually
    """
    __tablename__ = "replication_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    resource_name = Column(String(100), nullable=False, unique=True)

    # Watermark (ISO-8601 string, tiebreak key)
    last_timestamp = Column(String(64), nullable=False, default=SENTINEL_TIMESTAMP)
    last_key = Column(String(255), nullable=False, default=SENTINEL_KEY)

    # Statistics
    records_processed = Column(BigInteger, nullable=False, default=0, server_default=text("0"))
    last_run_at = Column(DateTime, nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, server_default=text("now()"))
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
