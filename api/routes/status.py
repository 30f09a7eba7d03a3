"""
Replication status endpoint: checkpoints, listing statistics and recent runs
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import StatusResponse, CheckpointInfo, ListingStats, ReplicationRunInfo
from models.checkpoint import ReplicationCheckpoint
from models.listing import Listing
from models.replication_run import ReplicationRun
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Status"])


async def get_listing_stats(db: AsyncSession) -> ListingStats:
    result = await db.execute(
        select(
            func.count(Listing.id),
            func.count(Listing.id).filter(func.cardinality(Listing.media_keys) > 0),
            func.min(Listing.modification_timestamp),
            func.max(Listing.modification_timestamp),
            func.count(func.distinct(Listing.city)),
            func.count(func.distinct(Listing.property_type)),
        )
    )
    total, with_media, oldest, newest, cities, property_types = result.one()
    return ListingStats(
        total_listings=total or 0,
        listings_with_media=with_media or 0,
        oldest_listing=oldest,
        newest_listing=newest,
        unique_cities=cities or 0,
        unique_property_types=property_types or 0
    )


@router.get("/status", response_model=StatusResponse)
async def replication_status(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Replication status.

    Returns:
    - Checkpoint per resource
    - Listing statistics
    - Most recent replication runs
    """
    try:
        checkpoint_rows = await db.execute(
            select(ReplicationCheckpoint).order_by(ReplicationCheckpoint.resource_name)
        )
        checkpoints = [CheckpointInfo.model_validate(row) for row in checkpoint_rows.scalars().all()]

        listings = await get_listing_stats(db)

        run_rows = await db.execute(
            select(ReplicationRun).order_by(ReplicationRun.started_at.desc()).limit(limit)
        )
        recent_runs = [ReplicationRunInfo.model_validate(row) for row in run_rows.scalars().all()]
    except SQLAlchemyError as e:
        logger.error(f"Error in status endpoint: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")

    return StatusResponse(
        checkpoints=checkpoints,
        listings=listings,
        recent_runs=recent_runs
    )
