"""
Load listings into PostgreSQL with upsert logic (idempotency)
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import UpsertError
from models.listing import Listing
from replication.transformers.listing_mapper import LISTING_MAPPED_COLUMNS, map_listing

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    One asyncio.Lock per key, dropped again once nobody holds or waits on it.

    asyncio.Lock wakes waiters in the order they called acquire, so writes
    for the same key are applied in arrival order.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self):
        return len(self._locks)


class ListingLoader:
    """
    Idempotent insert-or-update of listings.

    Ensures:
    - Replaying the same record leaves the row unchanged
    - Every mapped column is replaced on update (not a merge)
    - media_keys / preferred_media_key are left to the media pass
    - Writes for the same listing id never interleave
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._locks = KeyedLock()

    @staticmethod
    def build_upsert(row: Dict[str, Any]):
        """Build INSERT ... ON CONFLICT (id) DO UPDATE for a mapped row"""
        values = dict(row)
        values.setdefault("media_keys", [])
        values.setdefault("preferred_media_key", None)

        stmt = insert(Listing).values(**values)

        update_columns = {column: stmt.excluded[column] for column in LISTING_MAPPED_COLUMNS}
        update_columns["modification_timestamp"] = stmt.excluded.modification_timestamp
        update_columns["raw"] = stmt.excluded.raw
        update_columns["updated_at"] = func.now()

        # Every mapped column derives from raw, so an identical payload is a no-op
        return stmt.on_conflict_do_update(
            index_elements=["id"],
            set_=update_columns,
            where=Listing.raw.is_distinct_from(stmt.excluded.raw)
        )

    async def upsert_row(self, row: Dict[str, Any]) -> str:
        listing_id = row["id"]
        stmt = self.build_upsert(row)

        async with self._locks.hold(listing_id):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(stmt)
            except SQLAlchemyError as e:
                raise UpsertError(
                    f"Failed to upsert listing {listing_id}",
                    context={"record_id": listing_id, "table_name": Listing.__tablename__},
                    original_exception=e
                )

        return listing_id

    async def upsert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Map and upsert one upstream record.

        Returns:
            The mapped row

        Raises:
            MappingError: Record cannot be mapped
            UpsertError: Database write failed
        """
        row = map_listing(record)
        await self.upsert_row(row)
        logger.debug(f"Upserted listing {row['id']}")
        return row
