"""
Health check endpoint with database and checkpoint status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, CheckpointInfo
from models.checkpoint import ReplicationCheckpoint
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Replication checkpoints
    """
    db_connected = False
    checkpoints = []

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True

        result = await db.execute(
            select(ReplicationCheckpoint).order_by(ReplicationCheckpoint.resource_name)
        )
        checkpoints = [CheckpointInfo.model_validate(row) for row in result.scalars().all()]
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Health check query failed: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        timestamp=datetime.utcnow(),
        checkpoints=checkpoints
    )
