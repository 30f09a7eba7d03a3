"""
Unit tests for media reconciliation
"""

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql

from core.exceptions import DatabaseError, UpsertError
from replication.loaders.media_loader import MediaReconciler, select_preferred
from replication.transformers.listing_mapper import map_media


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


@pytest.fixture
def reconciler(session_factory, make_settings):
    """Reconciler whose parent check and relink are mocked"""
    media = MediaReconciler(session_factory, make_settings(MEDIA_UPSERT_CONCURRENCY=2))
    media.listing_exists = AsyncMock(return_value=True)
    media.relink_listing_media = AsyncMock()
    return media


class TestSelectPreferred:

    def test_flagged_item_wins(self, media_item):
        items = [media_item("M1", "E1"), media_item("M2", "E1", preferred=True)]

        assert select_preferred(items)["MediaKey"] == "M2"

    def test_first_item_when_none_flagged(self, media_item):
        items = [media_item("M1", "E1"), media_item("M2", "E1")]

        assert select_preferred(items)["MediaKey"] == "M1"

    def test_empty_list(self):
        assert select_preferred([]) is None


class TestMediaReconciler:
    """Test media upserts and listing relinking"""

    @pytest.mark.asyncio
    async def test_writes_items_and_relinks_listing(self, reconciler, session_factory, sample_media):
        result = await reconciler.reconcile_listing("E1", sample_media)

        assert result.items_written == 2
        assert result.listings_with_media == 1
        assert len(session_factory.of_kind("insert")) == 2
        reconciler.relink_listing_media.assert_awaited_once_with("E1", ["M1", "M2"], "M2")

    @pytest.mark.asyncio
    async def test_media_keys_keep_arrival_order(self, reconciler, media_item):
        items = [media_item(key, "E1") for key in ("M5", "M3", "M9", "M1", "M2")]

        await reconciler.reconcile_listing("E1", items)

        reconciler.relink_listing_media.assert_awaited_once_with(
            "E1", ["M5", "M3", "M9", "M1", "M2"], "M5"
        )

    @pytest.mark.asyncio
    async def test_orphan_media_is_dropped_with_one_warning(self, reconciler, session_factory, media_item, caplog):
        reconciler.listing_exists = AsyncMock(return_value=False)
        items = [media_item("M1", "E404"), media_item("M2", "E404")]

        with caplog.at_level(logging.WARNING):
            result = await reconciler.reconcile_listing("E404", items)

        assert result.items_orphaned == 2
        assert result.items_written == 0
        assert session_factory.statements == []
        reconciler.relink_listing_media.assert_not_awaited()
        warnings = [r for r in caplog.records if "does not exist" in r.getMessage()]
        assert len(warnings) == 1
        assert "E404" in warnings[0].getMessage()

    @pytest.mark.asyncio
    async def test_item_without_key_is_counted_as_failed(self, reconciler, media_item):
        broken = media_item("M2", "E1")
        del broken["MediaKey"]

        result = await reconciler.reconcile_listing("E1", [media_item("M1", "E1"), broken])

        assert result.items_written == 1
        assert result.items_failed == 1
        reconciler.relink_listing_media.assert_awaited_once_with("E1", ["M1"], "M1")

    @pytest.mark.asyncio
    async def test_empty_media_list_is_a_no_op(self, reconciler, session_factory):
        result = await reconciler.reconcile_listing("E1", [])

        assert result.listings_processed == 1
        assert session_factory.statements == []
        reconciler.listing_exists.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reconcile_isolates_listing_failures(self, reconciler, media_item):
        async def exists(listing_id):
            if listing_id == "E2":
                raise DatabaseError("lookup failed")
            return True

        reconciler.listing_exists = AsyncMock(side_effect=exists)

        result = await reconciler.reconcile({
            "E1": [media_item("M1", "E1")],
            "E2": [media_item("M2", "E2"), media_item("M3", "E2")],
        })

        assert result.listings_processed == 2
        assert result.items_written == 1
        assert result.items_failed == 2

    @pytest.mark.asyncio
    async def test_storage_failure_on_item_write(self, failing_session_factory, make_settings, media_item):
        media = MediaReconciler(failing_session_factory, make_settings())
        media.listing_exists = AsyncMock(return_value=True)
        media.relink_listing_media = AsyncMock()

        result = await media.reconcile_listing("E1", [media_item("M1", "E1")])

        assert result.items_failed == 1
        media.relink_listing_media.assert_not_awaited()

    def test_media_upsert_statement(self, media_item):
        sql = compiled(MediaReconciler.build_upsert(map_media(media_item("M1", "E1"), "E1")))

        assert "INSERT INTO listing_media" in sql
        assert "ON CONFLICT (media_key) DO UPDATE SET" in sql
        assert "listing_id = excluded.listing_id" in sql
        where_clause = sql.split(" WHERE ", 1)[1]
        assert "listing_media.media_url IS DISTINCT FROM excluded.media_url" in where_clause
        assert "listing_media.listing_id IS DISTINCT FROM excluded.listing_id" in where_clause
        assert "updated_at" not in where_clause


class TestMediaReconcilerQueries:
    """Test the SQL issued by the reconciler"""

    @pytest.mark.asyncio
    async def test_listing_exists(self, fake_sessions, fake_result, make_settings):
        sessions = fake_sessions(lambda statement: fake_result("E1"))
        media = MediaReconciler(sessions, make_settings())

        assert await media.listing_exists("E1") is True

    @pytest.mark.asyncio
    async def test_listing_exists_storage_error(self, failing_session_factory, make_settings):
        media = MediaReconciler(failing_session_factory, make_settings())

        with pytest.raises(DatabaseError):
            await media.listing_exists("E1")

    @pytest.mark.asyncio
    async def test_relink_overwrites_cached_pointers(self, session_factory, make_settings):
        media = MediaReconciler(session_factory, make_settings())

        await media.relink_listing_media("E1", ["M1", "M2"], "M2")

        statement = session_factory.of_kind("update")[0]
        params = statement.compile(dialect=postgresql.dialect()).params
        assert params["media_keys"] == ["M1", "M2"]
        assert params["preferred_media_key"] == "M2"

    @pytest.mark.asyncio
    async def test_relink_failure_raises_upsert_error(self, failing_session_factory, make_settings):
        media = MediaReconciler(failing_session_factory, make_settings())

        with pytest.raises(UpsertError):
            await media.relink_listing_media("E1", ["M1"], "M1")

    @pytest.mark.asyncio
    async def test_media_change_scan(self, fake_sessions, fake_result, make_settings):
        sessions = fake_sessions(lambda statement: fake_result(rows=["E1", "E2"]))
        media = MediaReconciler(sessions, make_settings())

        ids = await media.find_media_change_candidates("2024-01-15T00:00:00Z", limit=50)

        assert ids == ["E1", "E2"]
        sql = compiled(sessions.statements[0])
        params = sessions.statements[0].compile(dialect=postgresql.dialect()).params
        assert "PhotosChangeTimestamp" in params.values()
        assert datetime(2024, 1, 15, tzinfo=timezone.utc) in params.values()
        assert "AS TIMESTAMP WITH TIME ZONE" in sql
        assert "ORDER BY listings.id" in sql
        assert "LIMIT" in sql

    @pytest.mark.asyncio
    async def test_media_change_scan_compares_instants(self, fake_sessions, fake_result, make_settings):
        """Fractional seconds and offsets in the watermark are parsed, not compared as text"""
        sessions = fake_sessions(lambda statement: fake_result(rows=[]))
        media = MediaReconciler(sessions, make_settings())

        await media.find_media_change_candidates("2024-05-01T12:00:00.250+02:00")

        params = sessions.statements[0].compile(dialect=postgresql.dialect()).params
        assert datetime(2024, 5, 1, 10, 0, 0, 250000, tzinfo=timezone.utc) in params.values()
        assert "2024-05-01T12:00:00.250+02:00" not in params.values()

    @pytest.mark.asyncio
    async def test_iter_listing_ids_pages_by_key(self, fake_sessions, fake_result, make_settings):
        pages = iter([["A", "B"], ["C", "D"], ["E"]])
        sessions = fake_sessions(lambda statement: fake_result(rows=next(pages)))
        media = MediaReconciler(sessions, make_settings())

        batches = [ids async for ids in media.iter_listing_ids(page_size=2, max_listings=0)]

        assert batches == [["A", "B"], ["C", "D"], ["E"]]
        assert "listings.id >" in compiled(sessions.statements[1])

    @pytest.mark.asyncio
    async def test_iter_listing_ids_respects_cap(self, fake_sessions, fake_result, make_settings):
        pages = iter([["A", "B"], ["C"]])
        sessions = fake_sessions(lambda statement: fake_result(rows=next(pages)))
        media = MediaReconciler(sessions, make_settings())

        batches = [ids async for ids in media.iter_listing_ids(page_size=2, max_listings=3)]

        assert batches == [["A", "B"], ["C"]]
        assert len(sessions.statements) == 2
