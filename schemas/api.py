"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import SyncMode, RunStatus
from uuid import UUID

# ============================================================================
# Health Check Schemas
# ============================================================================

class CheckpointInfo(BaseModel):
    """Replication checkpoint information"""
    resource_name: str
    last_timestamp: str
    last_key: str
    records_processed: int
    last_run_at: Optional[datetime]

    class Config:
        from_attributes = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    status: str = Field("healthy", description="Overall system status: healthy or unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    checkpoints: List[CheckpointInfo] = Field(default_factory=list)

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Storage reachability decides overall health"""
        if not values.get("database_connected", False):
            return "unhealthy"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "checkpoints": [
                    {
                        "resource_name": "Property",
                        "last_timestamp": "2024-01-15T10:00:00Z",
                        "last_key": "X1234567",
                        "records_processed": 152000,
                        "last_run_at": "2024-01-15T10:00:05Z"
                    }
                ]
            }
        }

# ============================================================================
# Status Schemas
# ============================================================================

class ListingStats(BaseModel):
    """Aggregate statistics over replicated listings"""
    total_listings: int = 0
    listings_with_media: int = 0
    oldest_listing: Optional[datetime] = None
    newest_listing: Optional[datetime] = None
    unique_cities: int = 0
    unique_property_types: int = 0


class ReplicationRunInfo(BaseModel):
    """Replication cycle record"""
    run_id: UUID
    mode: SyncMode
    status: RunStatus
    cycle_number: Optional[int]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_seconds: Optional[float]
    entities_processed: int = 0
    entities_failed: int = 0
    entity_rate: Optional[float] = None
    media_listings: int = 0
    media_items: int = 0
    media_orphaned: int = 0
    media_failed: int = 0
    checkpoint_before: Optional[str] = None
    checkpoint_after: Optional[str] = None
    error_message: Optional[str] = None
    breaker_states: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class StatusResponse(BaseModel):
    """Replication status response model"""
    status: str = "ok"
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    checkpoints: List[CheckpointInfo] = Field(default_factory=list)
    listings: ListingStats
    recent_runs: List[ReplicationRunInfo] = Field(default_factory=list)
