"""
Persist replication cycle summaries to replication_runs
"""

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import DatabaseError
from models.replication_run import ReplicationRun
from schemas.replication import CycleSummary

logger = logging.getLogger(__name__)


class RunLog:
    """Audit trail of replication cycles"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def to_model(summary: CycleSummary) -> ReplicationRun:
        entities = summary.entities
        media = summary.media
        return ReplicationRun(
            mode=summary.mode,
            status=summary.status,
            cycle_number=summary.cycle_number,
            started_at=summary.started_at.replace(tzinfo=None),
            completed_at=summary.completed_at.replace(tzinfo=None) if summary.completed_at else None,
            duration_seconds=summary.duration_seconds,
            entities_processed=entities.processed if entities else 0,
            entities_failed=entities.failed if entities else 0,
            entity_pages=entities.pages if entities else 0,
            entity_rate=entities.rate if entities else None,
            media_listings=media.listings_processed if media else 0,
            media_items=media.items_written if media else 0,
            media_orphaned=media.items_orphaned if media else 0,
            media_failed=media.items_failed if media else 0,
            checkpoint_before=entities.checkpoint_before if entities else None,
            checkpoint_after=entities.checkpoint_after if entities else None,
            error_message=summary.error,
            breaker_states=summary.breakers or None,
        )

    async def record(self, summary: CycleSummary) -> ReplicationRun:
        run = self.to_model(summary)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(run)
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to record replication run",
                context={"operation": "INSERT", "table_name": ReplicationRun.__tablename__},
                original_exception=e
            )
        logger.debug(f"Recorded replication run {run.run_id}")
        return run

    async def recent(self, limit: int = 10) -> List[ReplicationRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReplicationRun).order_by(ReplicationRun.started_at.desc()).limit(limit)
            )
            return list(result.scalars().all())
