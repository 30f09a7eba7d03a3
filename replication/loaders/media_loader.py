"""
Media reconciliation: write media items and keep the listing's media cache.

Items are upserted into listing_media only when the parent listing exists.
Afterwards the parent's media_keys (ordered) and preferred_media_key are
overwritten in a separate write. The two writes are not atomic: a crash in
between leaves media rows newer than the cached pointers until the next pass
for that listing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import case, cast, func, null, or_, select, update
from sqlalchemy.dialects.postgresql import TIMESTAMP, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, settings as default_settings
from core.exceptions import DatabaseError, MappingError, OrphanMediaError, UpsertError
from models.listing import Listing
from models.media import ListingMedia
from replication.checkpoint import parse_timestamp
from replication.transformers.listing_mapper import MEDIA_MAPPED_COLUMNS, map_media
from schemas.replication import MediaPhaseResult

logger = logging.getLogger(__name__)

MEDIA_CHANGE_FIELDS = (
    "PhotosChangeTimestamp",
    "DocumentsChangeTimestamp",
    "MediaChangeTimestamp",
)

ISO_TIMESTAMP_PATTERN = r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def changed_at(field: str):
    """raw[field] as timestamptz, NULL unless it is an ISO-8601 timestamp"""
    value = Listing.raw[field].astext
    return case(
        (value.op("~")(ISO_TIMESTAMP_PATTERN), cast(value, TIMESTAMP(timezone=True))),
        else_=null()
    )


def select_preferred(items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """The item flagged PreferredPhotoYN, else the first one, else None"""
    for item in items:
        if item.get("PreferredPhotoYN") is True:
            return item
    return items[0] if items else None


class MediaReconciler:
    """Upsert media items and relink them to their parent listings"""

    def __init__(self, session_factory: async_sessionmaker, config: Optional[Settings] = None):
        self.session_factory = session_factory
        self.config = config or default_settings

    async def listing_exists(self, listing_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Listing.id).where(Listing.id == listing_id)
                )
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to check listing {listing_id}",
                context={"operation": "SELECT", "table_name": Listing.__tablename__},
                original_exception=e
            )

    @staticmethod
    def _warn_orphan(listing_id: str, item_count: int):
        orphan = OrphanMediaError(
            f"Cannot store media for listing {listing_id} as the listing does not exist in database",
            context={"listing_id": listing_id, "media_items": item_count}
        )
        logger.warning(orphan.message, extra={"error_context": orphan.to_dict()})

    @staticmethod
    def build_upsert(row: Dict[str, Any]):
        stmt = insert(ListingMedia).values(**row)
        update_columns = {column: stmt.excluded[column] for column in MEDIA_MAPPED_COLUMNS}
        update_columns["listing_id"] = stmt.excluded.listing_id
        changed = [
            getattr(ListingMedia, column).is_distinct_from(stmt.excluded[column])
            for column in (*MEDIA_MAPPED_COLUMNS, "listing_id")
        ]
        update_columns["updated_at"] = func.now()
        return stmt.on_conflict_do_update(
            index_elements=["media_key"],
            set_=update_columns,
            where=or_(*changed)
        )

    async def _write_media_row(self, row: Dict[str, Any]):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(self.build_upsert(row))
        except SQLAlchemyError as e:
            raise UpsertError(
                f"Failed to upsert media {row['media_key']}",
                context={"record_id": row["media_key"], "table_name": ListingMedia.__tablename__},
                original_exception=e
            )

    async def upsert_media_item(self, item: Dict[str, Any], listing_id: str) -> bool:
        """
        Write one media item if its parent listing exists.

        Returns:
            True when written; False when the parent is missing (item dropped)
        """
        if not await self.listing_exists(listing_id):
            self._warn_orphan(listing_id, 1)
            return False

        await self._write_media_row(map_media(item, listing_id))
        return True

    async def relink_listing_media(
        self,
        listing_id: str,
        ordered_media_keys: List[str],
        preferred_key: Optional[str]
    ):
        """Overwrite the listing's cached media pointers"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(Listing)
                        .where(Listing.id == listing_id)
                        .values(
                            media_keys=list(ordered_media_keys),
                            preferred_media_key=preferred_key,
                            updated_at=func.now()
                        )
                    )
        except SQLAlchemyError as e:
            raise UpsertError(
                f"Failed to relink media for listing {listing_id}",
                context={"record_id": listing_id, "table_name": Listing.__tablename__},
                original_exception=e
            )

    async def reconcile_listing(self, listing_id: str, items: List[Dict[str, Any]]) -> MediaPhaseResult:
        """
        Upsert a listing's media and refresh its cached pointers.

        Parent existence is checked once. Items are written with bounded
        concurrency; media_keys keeps the arrival order of the items that
        were written, and the preferred item is chosen among those.
        """
        result = MediaPhaseResult(listings_processed=1)
        if not items:
            return result

        if not await self.listing_exists(listing_id):
            self._warn_orphan(listing_id, len(items))
            result.items_orphaned = len(items)
            return result

        result.listings_with_media = 1
        written: List[Optional[Dict[str, Any]]] = [None] * len(items)
        chunk_size = max(1, self.config.MEDIA_UPSERT_CONCURRENCY)

        async def write(index: int, item: Dict[str, Any]):
            try:
                await self._write_media_row(map_media(item, listing_id))
            except (MappingError, UpsertError) as e:
                logger.error(
                    f"Failed to store media for listing {listing_id}: {e}",
                    extra={"error_context": e.to_dict()}
                )
                result.items_failed += 1
                return
            written[index] = item

        for start in range(0, len(items), chunk_size):
            await asyncio.gather(
                *(write(start + offset, item) for offset, item in enumerate(items[start:start + chunk_size]))
            )

        applied = [item for item in written if item is not None]
        result.items_written = len(applied)

        if applied:
            preferred = select_preferred(applied)
            await self.relink_listing_media(
                listing_id,
                [str(item["MediaKey"]) for item in applied],
                str(preferred["MediaKey"]) if preferred else None
            )

        return result

    async def reconcile(self, media_by_listing: Dict[str, List[Dict[str, Any]]]) -> MediaPhaseResult:
        """Reconcile media for several listings, one listing at a time"""
        total = MediaPhaseResult()
        for listing_id, items in media_by_listing.items():
            try:
                total.merge(await self.reconcile_listing(listing_id, items))
            except (DatabaseError, UpsertError) as e:
                logger.error(
                    f"Media reconciliation failed for listing {listing_id}: {e}",
                    extra={"error_context": e.to_dict()}
                )
                total.listings_processed += 1
                total.items_failed += len(items)
        return total

    async def find_media_change_candidates(self, since: str, limit: Optional[int] = None) -> List[str]:
        """
        Listing ids whose raw payload reports a media change after `since`.

        Both sides compare as timestamptz, so fractional seconds and UTC
        offsets order correctly. Values that do not look like ISO-8601
        timestamps are ignored.
        """
        limit = limit or self.config.MEDIA_CHANGE_SCAN_LIMIT
        since_moment = parse_timestamp(since) or EPOCH
        conditions = [
            Listing.raw.has_key(field) & (changed_at(field) > since_moment)
            for field in MEDIA_CHANGE_FIELDS
        ]
        stmt = select(Listing.id).where(or_(*conditions)).order_by(Listing.id).limit(limit)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [row for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Media change scan failed",
                context={"operation": "SELECT", "table_name": Listing.__tablename__, "since": since},
                original_exception=e
            )

    async def iter_listing_ids(
        self,
        page_size: Optional[int] = None,
        max_listings: Optional[int] = None
    ) -> AsyncIterator[List[str]]:
        """Yield pages of listing ids in id order (keyset pagination)"""
        page_size = page_size or self.config.MEDIA_PASS_PAGE_SIZE
        if max_listings is None:
            max_listings = self.config.MEDIA_PASS_MAX_LISTINGS

        last_id: Optional[str] = None
        yielded = 0

        while True:
            size = page_size
            if max_listings:
                size = min(size, max_listings - yielded)
                if size <= 0:
                    return

            stmt = select(Listing.id).order_by(Listing.id).limit(size)
            if last_id is not None:
                stmt = stmt.where(Listing.id > last_id)

            try:
                async with self.session_factory() as session:
                    result = await session.execute(stmt)
                    ids = list(result.scalars().all())
            except SQLAlchemyError as e:
                raise DatabaseError(
                    "Failed to page listing ids",
                    context={"operation": "SELECT", "table_name": Listing.__tablename__},
                    original_exception=e
                )

            if not ids:
                return

            yield ids
            yielded += len(ids)
            last_id = ids[-1]

            if len(ids) < size:
                return
