"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models passed between replication
components and returned by the status API:

Schemas:
    replication: Checkpoints, entity pages, phase results and cycle summaries
    api: Health and status endpoint response models

Usage:
    from schemas.replication import Checkpoint, CycleSummary
    from schemas.api import HealthCheckResponse, StatusResponse

Example:
    summary = CycleSummary(
        cycle_number=1,
        mode=SyncMode.INCREMENTAL,
        status=RunStatus.RUNNING,
        started_at=datetime.now(timezone.utc)
    )
    summary.entities = EntityPhaseResult(processed=1400, pages=2)
"""

__all__ = [
    "Checkpoint",
    "EntityPage",
    "EntityPhaseResult",
    "MediaPhaseResult",
    "CycleSummary",
    "DiscoveredField",
    "CheckpointInfo",
    "HealthCheckResponse",
    "ListingStats",
    "ReplicationRunInfo",
    "StatusResponse",
]
