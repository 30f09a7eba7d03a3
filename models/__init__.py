"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (SyncMode, RunStatus)
    listing: Replicated listings keyed by the upstream ListingKey
    media: Media items attached to listings
    checkpoint: Per-resource replication cursor
    replication_run: Per-cycle run tracking and metrics

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB and TEXT[].

Usage:
    from models import Listing, ListingMedia, ReplicationCheckpoint
    from models.base import SyncMode, RunStatus

Relationships:
    - Listing → ListingMedia (one-to-many, ON DELETE CASCADE)
    - ReplicationRun rows are independent audit records
"""

from models.base import Base, SyncMode, RunStatus
from models.listing import Listing
from models.media import ListingMedia
from models.checkpoint import ReplicationCheckpoint, SENTINEL_TIMESTAMP, SENTINEL_KEY
from models.replication_run import ReplicationRun

__all__ = [
    "Base",
    "SyncMode",
    "RunStatus",
    "Listing",
    "ListingMedia",
    "ReplicationCheckpoint",
    "ReplicationRun",
    "SENTINEL_TIMESTAMP",
    "SENTINEL_KEY",
]
