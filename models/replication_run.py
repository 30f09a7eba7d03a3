from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, SyncMode, RunStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ReplicationRun(Base):
    """
    Tracks metadata for each replication cycle.

    Purpose:
    - Audit trail of all cycles
    - Throughput monitoring
    - Error tracking for failed cycles
    """
    __tablename__ = "replication_runs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    # Run metadata
    mode = Column(
        Enum(SyncMode, name="sync_mode", values_callable=_enum_values),
        nullable=False,
        index=True
    )
    status = Column(
        Enum(RunStatus, name="run_status", values_callable=_enum_values),
        default=RunStatus.RUNNING,
        nullable=False,
        index=True
    )
    cycle_number = Column(Integer, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Entity phase
    entities_processed = Column(Integer, default=0)
    entities_failed = Column(Integer, default=0)
    entity_pages = Column(Integer, default=0)
    entity_rate = Column(Float, nullable=True)

    # Media phase
    media_listings = Column(Integer, default=0)
    media_items = Column(Integer, default=0)
    media_orphaned = Column(Integer, default=0)
    media_failed = Column(Integer, default=0)

    # Checkpoint info
    checkpoint_before = Column(String(320), nullable=True)
    checkpoint_after = Column(String(320), nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    breaker_states = Column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_replication_run_mode_started", "mode", "started_at"),
    )
