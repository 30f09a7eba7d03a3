"""
Pydantic schemas for replication cycle inputs and outputs
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import SyncMode, RunStatus


class Checkpoint(BaseModel):
    """Snapshot of a replication checkpoint row"""
    resource_name: str
    last_timestamp: str
    last_key: str
    records_processed: int = 0
    last_run_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def cursor(self) -> str:
        return f"{self.last_timestamp}|{self.last_key}"


class EntityPage(BaseModel):
    """One page of upstream entity records"""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class EntityPhaseResult(BaseModel):
    """Counters for the entity pass of a cycle"""
    processed: int = 0
    failed: int = 0
    pages: int = 0
    duration_seconds: float = 0.0
    rate: float = 0.0
    touched_ids: List[str] = Field(default_factory=list)
    checkpoint_before: Optional[str] = None
    checkpoint_after: Optional[str] = None


class MediaPhaseResult(BaseModel):
    """Counters for the media pass of a cycle"""
    listings_processed: int = 0
    listings_with_media: int = 0
    items_written: int = 0
    items_orphaned: int = 0
    items_failed: int = 0
    duration_seconds: float = 0.0

    def merge(self, other: "MediaPhaseResult") -> "MediaPhaseResult":
        """Accumulate another result into this one"""
        self.listings_processed += other.listings_processed
        self.listings_with_media += other.listings_with_media
        self.items_written += other.items_written
        self.items_orphaned += other.items_orphaned
        self.items_failed += other.items_failed
        return self


class CycleSummary(BaseModel):
    """Outcome of one replication cycle"""
    cycle_number: int
    mode: SyncMode
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    entities: Optional[EntityPhaseResult] = None
    media: Optional[MediaPhaseResult] = None
    error: Optional[str] = None
    breakers: Dict[str, Any] = Field(default_factory=dict)


class DiscoveredField(BaseModel):
    """Upstream field reported by metadata introspection"""
    name: str
    type: str = "Edm.String"
    nullable: bool = True
