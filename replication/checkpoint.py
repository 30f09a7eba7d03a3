"""
Durable per-resource replication cursor.

A checkpoint is the pair (last_timestamp, last_key) plus a cumulative
record counter. The orchestrator advances it only after a page of writes is
committed, so a crash replays at most the page in flight.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import CheckpointError
from models.checkpoint import ReplicationCheckpoint, SENTINEL_TIMESTAMP, SENTINEL_KEY
from schemas.replication import Checkpoint

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str):
    """Parse an upstream ISO-8601 timestamp into an aware datetime, or None"""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cursor_sort_key(timestamp: str, key: str) -> Tuple:
    """
    Order cursors the way upstream orders records.

    Timestamps compare temporally when they parse, lexically otherwise;
    keys always compare lexically.
    """
    parsed = parse_timestamp(timestamp)
    if parsed is not None:
        return (0, parsed, str(key))
    return (1, str(timestamp), str(key))


def format_timestamp(moment: datetime) -> str:
    """Format a datetime the way checkpoints store watermarks"""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


class CheckpointStore:
    """Read and write replication checkpoints in their own transactions"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _insert_sentinel(resource_name: str):
        return insert(ReplicationCheckpoint).values(
            resource_name=resource_name,
            last_timestamp=SENTINEL_TIMESTAMP,
            last_key=SENTINEL_KEY,
            records_processed=0
        ).on_conflict_do_nothing(index_elements=["resource_name"])

    async def get(self, resource_name: str) -> Checkpoint:
        """Return the checkpoint, creating it at the sentinel if absent"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(self._insert_sentinel(resource_name))
                    result = await session.execute(
                        select(ReplicationCheckpoint).where(
                            ReplicationCheckpoint.resource_name == resource_name
                        )
                    )
                    row = result.scalar_one()
                    return Checkpoint.model_validate(row)
        except SQLAlchemyError as e:
            raise CheckpointError(
                f"Failed to read checkpoint for {resource_name}",
                context={"resource_name": resource_name, "operation": "get"},
                original_exception=e
            )

    async def advance(
        self,
        resource_name: str,
        new_timestamp: str,
        new_key: str,
        delta_processed: int
    ) -> Checkpoint:
        """
        Move the watermark forward and add to the processed counter.

        The row is locked for the duration of the transaction. A pair that
        would move the watermark backwards is ignored with a warning; the
        counters are still updated.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(self._insert_sentinel(resource_name))
                    result = await session.execute(
                        select(ReplicationCheckpoint)
                        .where(ReplicationCheckpoint.resource_name == resource_name)
                        .with_for_update()
                    )
                    row = result.scalar_one()

                    current = cursor_sort_key(row.last_timestamp, row.last_key)
                    proposed = cursor_sort_key(new_timestamp, new_key)
                    if proposed < current:
                        logger.warning(
                            f"Refusing to move {resource_name} checkpoint backwards "
                            f"from ({row.last_timestamp}, {row.last_key}) "
                            f"to ({new_timestamp}, {new_key})"
                        )
                    else:
                        row.last_timestamp = new_timestamp
                        row.last_key = str(new_key)

                    row.records_processed = (row.records_processed or 0) + delta_processed
                    row.last_run_at = datetime.utcnow()
                    snapshot = Checkpoint.model_validate(row)
        except SQLAlchemyError as e:
            raise CheckpointError(
                f"Failed to advance checkpoint for {resource_name}",
                context={
                    "resource_name": resource_name,
                    "operation": "advance",
                    "new_timestamp": new_timestamp,
                    "new_key": new_key,
                },
                original_exception=e
            )

        logger.info(
            f"Checkpoint {resource_name} at ({snapshot.last_timestamp}, {snapshot.last_key}), "
            f"{snapshot.records_processed} records processed"
        )
        return snapshot

    async def reset(self, resource_name: str) -> Checkpoint:
        """Manually reset a checkpoint to the sentinel values"""
        stmt = insert(ReplicationCheckpoint).values(
            resource_name=resource_name,
            last_timestamp=SENTINEL_TIMESTAMP,
            last_key=SENTINEL_KEY,
            records_processed=0
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["resource_name"],
            set_={
                "last_timestamp": SENTINEL_TIMESTAMP,
                "last_key": SENTINEL_KEY,
                "records_processed": 0,
                "updated_at": datetime.utcnow(),
            }
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except SQLAlchemyError as e:
            raise CheckpointError(
                f"Failed to reset checkpoint for {resource_name}",
                context={"resource_name": resource_name, "operation": "reset"},
                original_exception=e
            )

        logger.warning(f"Checkpoint {resource_name} reset to ({SENTINEL_TIMESTAMP}, {SENTINEL_KEY})")
        return Checkpoint(
            resource_name=resource_name,
            last_timestamp=SENTINEL_TIMESTAMP,
            last_key=SENTINEL_KEY,
            records_processed=0
        )

    async def list_all(self) -> List[Checkpoint]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ReplicationCheckpoint).order_by(ReplicationCheckpoint.resource_name)
                )
                return [Checkpoint.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to list checkpoints",
                context={"operation": "list_all"},
                original_exception=e
            )


def is_sentinel(checkpoint: Checkpoint) -> bool:
    return (
        checkpoint.last_timestamp == SENTINEL_TIMESTAMP
        and checkpoint.last_key == SENTINEL_KEY
    )
