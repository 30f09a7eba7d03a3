"""
Replication Runner - Orchestrates the entity and media sync cycle.

This module drives one replication cycle at a time:
- Mode selection (full, incremental, media-only)
- Entity pass: page through upstream from the checkpoint, upsert with
  bounded concurrency, advance the checkpoint once per page
- Media pass: fetch media for the listings of interest and reconcile them
- Partial failure support (individual records are logged and skipped)
- Cycle summaries that are always logged and optionally persisted

State machine:
    IDLE -> FETCHING_ENTITIES -> UPSERTING_ENTITIES -> CHECKPOINTING
         -> FETCHING_MEDIA -> UPSERTING_MEDIA -> SLEEPING -> (next cycle)
    any failure -> FAILED -> SLEEPING
"""

import asyncio
import enum
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import Settings, settings as default_settings
from core.exceptions import (
    CircuitOpenError,
    LoadError,
    MappingError,
    ReplicationException,
)
from models.base import RunStatus, SyncMode
from models.checkpoint import SENTINEL_KEY
from replication.checkpoint import CheckpointStore, cursor_sort_key, format_timestamp, is_sentinel
from replication.extractors.upstream_client import ENTITY_RESOURCE, MEDIA_RESOURCE, UpstreamClient
from replication.governor import RateGovernor
from replication.loaders.listing_loader import ListingLoader
from replication.loaders.media_loader import MediaReconciler
from schemas.replication import CycleSummary, EntityPhaseResult, MediaPhaseResult

logger = logging.getLogger(__name__)

Cursor = Tuple[str, str]


class ReplicationState(str, enum.Enum):
    IDLE = "idle"
    FETCHING_ENTITIES = "fetching_entities"
    UPSERTING_ENTITIES = "upserting_entities"
    FETCHING_MEDIA = "fetching_media"
    UPSERTING_MEDIA = "upserting_media"
    CHECKPOINTING = "checkpointing"
    SLEEPING = "sleeping"
    FAILED = "failed"


class PhaseTimeoutError(ReplicationException):
    """A cycle phase ran longer than its configured limit"""
    pass


def throughput(records: int, seconds: float) -> float:
    """Records per second rounded to two decimals"""
    if seconds <= 0:
        return 0.0
    return round(records / seconds, 2)


class ReplicationRunner:
    """
    Replication orchestrator

    Responsibilities:
    - Choose the cycle mode
    - Drive entity and media phases through the upstream client
    - Control checkpoint advancement
    - Absorb cycle-level failures so the process keeps running
    - Produce an accurate summary for every cycle
    """

    def __init__(
        self,
        client: UpstreamClient,
        checkpoints: CheckpointStore,
        listing_loader: ListingLoader,
        media_reconciler: MediaReconciler,
        governor: Optional[RateGovernor] = None,
        run_log=None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.client = client
        self.checkpoints = checkpoints
        self.listings = listing_loader
        self.media = media_reconciler
        self.governor = governor
        self.run_log = run_log
        self.config = config or default_settings
        self._sleep = sleep
        self._clock = clock
        self._now = now

        self.state = ReplicationState.IDLE
        self.cycle_number = 0
        self.last_summary: Optional[CycleSummary] = None
        self._circuit_pauses = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def _set_state(self, state: ReplicationState):
        if state != self.state:
            logger.debug(f"Replication state: {self.state.value} -> {state.value}")
            self.state = state

    # ------------------------------------------------------------------
    # Mode selection
    # ------------------------------------------------------------------

    async def determine_mode(self, cycle_number: Optional[int] = None) -> SyncMode:
        """
        Pick the mode for a cycle.

        A checkpoint still at the sentinel means nothing was ever replicated,
        so the cycle is full. Otherwise every Kth cycle is media-only.
        """
        cycle_number = cycle_number if cycle_number is not None else self.cycle_number
        checkpoint = await self.checkpoints.get(ENTITY_RESOURCE)
        if is_sentinel(checkpoint):
            return SyncMode.FULL

        every = self.config.MEDIA_ONLY_EVERY_N_CYCLES
        if every and cycle_number > 0 and cycle_number % every == 0:
            return SyncMode.MEDIA_ONLY

        return SyncMode.INCREMENTAL

    # ------------------------------------------------------------------
    # Entity phase
    # ------------------------------------------------------------------

    async def _apply_record(self, record: Dict[str, Any]) -> Optional[Cursor]:
        try:
            row = await self.listings.upsert(record)
        except (MappingError, LoadError) as e:
            logger.error(
                f"Failed to process listing {record.get('ListingKey') if isinstance(record, dict) else None}: {e}",
                extra={"error_context": e.to_dict()}
            )
            return None
        return (str(record["ModificationTimestamp"]), row["id"])

    async def _apply_page(self, items: List[Dict[str, Any]]) -> List[Cursor]:
        applied: List[Cursor] = []
        chunk_size = max(1, self.config.REPLICATION_CONCURRENCY)
        for start in range(0, len(items), chunk_size):
            results = await asyncio.gather(
                *(self._apply_record(record) for record in items[start:start + chunk_size])
            )
            applied.extend(cursor for cursor in results if cursor is not None)
        return applied

    async def run_entity_phase(self, collect_touched: bool = True) -> EntityPhaseResult:
        """
        Replicate listings from the Property checkpoint onward.

        The checkpoint advances once per page, to the greatest cursor among
        the records that were actually written.
        """
        result = EntityPhaseResult()
        started = self._clock()

        checkpoint = await self.checkpoints.get(ENTITY_RESOURCE)
        cursor: Cursor = (checkpoint.last_timestamp, checkpoint.last_key)
        result.checkpoint_before = checkpoint.cursor
        result.checkpoint_after = checkpoint.cursor

        batch_size = min(self.config.REPLICATION_BATCH_SIZE, self.config.UPSTREAM_MAX_PAGE_SIZE)
        budget = self.config.REPLICATION_MAX_RECORDS

        logger.info(f"Starting entity replication from ({cursor[0]}, {cursor[1]})")

        while True:
            page_size = batch_size
            if budget:
                remaining = budget - result.processed
                if remaining <= 0:
                    logger.info(f"Reached per-cycle record budget of {budget}")
                    break
                page_size = min(page_size, remaining)

            self._set_state(ReplicationState.FETCHING_ENTITIES)
            page = await self.client.fetch_entity_batch(cursor[0], cursor[1], page_size)
            result.pages += 1

            if page.count == 0:
                logger.info("No more listing records to replicate")
                break

            self._set_state(ReplicationState.UPSERTING_ENTITIES)
            applied = await self._apply_page(page.items)
            result.failed += page.count - len(applied)

            if not applied:
                logger.warning(
                    f"No records applied from a page of {page.count}; "
                    f"stopping entity pass at ({cursor[0]}, {cursor[1]})"
                )
                break

            newest = max(applied, key=lambda c: cursor_sort_key(*c))

            self._set_state(ReplicationState.CHECKPOINTING)
            advanced = await self.checkpoints.advance(ENTITY_RESOURCE, newest[0], newest[1], len(applied))
            cursor = (advanced.last_timestamp, advanced.last_key)
            result.checkpoint_after = advanced.cursor
            result.processed += len(applied)
            if collect_touched:
                result.touched_ids.extend(key for _, key in applied)

            elapsed = self._clock() - started
            logger.info(
                f"Processed listing batch {result.pages}: {result.processed} listings "
                f"({throughput(result.processed, elapsed)} records/sec)"
            )

            if page.count < page_size:
                logger.info("Received fewer listing records than requested, assuming completion")
                break

        result.duration_seconds = round(self._clock() - started, 3)
        result.rate = throughput(result.processed, result.duration_seconds)
        logger.info(
            f"Entity replication completed in {result.duration_seconds}s. "
            f"Processed {result.processed} listings at {result.rate} records/sec "
            f"({result.failed} failed)"
        )
        return result

    # ------------------------------------------------------------------
    # Media phase
    # ------------------------------------------------------------------

    async def _fetch_media(self, listing_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        while True:
            try:
                return await self.client.fetch_media_for_entities(listing_ids)
            except CircuitOpenError as e:
                if self._circuit_pauses >= self.config.CIRCUIT_OPEN_MAX_PAUSES:
                    logger.error(f"Circuit still open after {self._circuit_pauses} pauses, giving up")
                    raise
                self._circuit_pauses += 1
                pause = self.config.CIRCUIT_OPEN_PAUSE_SECONDS
                logger.warning(
                    f"{e.message}; pausing cycle for {pause}s "
                    f"(pause {self._circuit_pauses}/{self.config.CIRCUIT_OPEN_MAX_PAUSES})"
                )
                await self._sleep(pause)

    async def _media_for_listings(self, listing_ids: List[str], result: MediaPhaseResult):
        self._set_state(ReplicationState.FETCHING_MEDIA)
        media_by_listing = await self._fetch_media(listing_ids)

        self._set_state(ReplicationState.UPSERTING_MEDIA)
        batch = await self.media.reconcile(media_by_listing)
        batch.listings_processed = len(listing_ids)
        result.merge(batch)

    async def run_media_phase(self, listing_ids: Optional[List[str]] = None) -> MediaPhaseResult:
        """
        Replicate media for the given listings, or for every listing when
        listing_ids is None.
        """
        result = MediaPhaseResult()
        started = self._clock()
        page_size = max(1, self.config.MEDIA_PASS_PAGE_SIZE)

        if listing_ids is None:
            logger.info("Starting media replication for all listings")
            async for ids in self.media.iter_listing_ids(page_size):
                await self._media_for_listings(ids, result)
                logger.info(
                    f"Media progress: {result.listings_processed} listings, "
                    f"{result.items_written} media items"
                )
        else:
            unique_ids = list(dict.fromkeys(listing_ids))
            logger.info(f"Starting media replication for {len(unique_ids)} listings")
            for start in range(0, len(unique_ids), page_size):
                await self._media_for_listings(unique_ids[start:start + page_size], result)

        result.duration_seconds = round(self._clock() - started, 3)
        logger.info(
            f"Media replication completed in {result.duration_seconds}s: "
            f"{result.listings_processed} listings, {result.items_written} items written, "
            f"{result.items_orphaned} orphaned, {result.items_failed} failed"
        )
        return result

    async def run_media_only_phase(self) -> MediaPhaseResult:
        """
        Reconcile media for listings whose media changed since the Media
        checkpoint, then move that checkpoint to the scan start time.
        """
        scan_started = self._now()
        checkpoint = await self.checkpoints.get(MEDIA_RESOURCE)
        limit = self.config.MEDIA_CHANGE_SCAN_LIMIT

        candidates = await self.media.find_media_change_candidates(checkpoint.last_timestamp, limit)
        logger.info(f"Found {len(candidates)} listings with media changes since {checkpoint.last_timestamp}")
        if limit and len(candidates) >= limit:
            logger.warning(
                f"Media change scan hit its limit of {limit}; "
                f"remaining changes are picked up by the next full media pass"
            )

        result = await self.run_media_phase(candidates)

        self._set_state(ReplicationState.CHECKPOINTING)
        await self.checkpoints.advance(
            MEDIA_RESOURCE,
            format_timestamp(scan_started),
            SENTINEL_KEY,
            result.listings_processed
        )
        return result

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _with_timeout(self, coro, seconds: float, phase: str):
        if not seconds or seconds <= 0:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=seconds)
        except asyncio.TimeoutError as e:
            raise PhaseTimeoutError(
                f"{phase} phase exceeded {seconds}s",
                context={"phase": phase, "timeout": seconds},
                original_exception=e
            )

    async def _execute(self, summary: CycleSummary):
        mode = summary.mode
        if mode == SyncMode.MEDIA_ONLY:
            summary.media = await self._with_timeout(
                self.run_media_only_phase(), self.config.MEDIA_PHASE_TIMEOUT, "media"
            )
            return

        summary.entities = await self._with_timeout(
            self.run_entity_phase(collect_touched=(mode == SyncMode.INCREMENTAL)),
            self.config.ENTITY_PHASE_TIMEOUT,
            "entity"
        )

        listing_ids = None if mode == SyncMode.FULL else summary.entities.touched_ids
        if listing_ids is not None and not listing_ids:
            logger.info("No listings touched this cycle, skipping media phase")
            summary.media = MediaPhaseResult()
            return

        summary.media = await self._with_timeout(
            self.run_media_phase(listing_ids), self.config.MEDIA_PHASE_TIMEOUT, "media"
        )

    async def run_cycle(self, mode: Optional[SyncMode] = None) -> CycleSummary:
        """
        Run one replication cycle.

        Cycle-level errors never escape: they produce a FAILED summary and
        the runner moves on to SLEEPING. Only cancellation propagates.
        """
        self._idle.clear()
        self.cycle_number += 1
        self._circuit_pauses = 0
        started = self._clock()

        summary = CycleSummary(
            cycle_number=self.cycle_number,
            mode=mode or SyncMode.INCREMENTAL,
            status=RunStatus.RUNNING,
            started_at=self._now()
        )

        try:
            if mode is None:
                summary.mode = await self.determine_mode(self.cycle_number)
            logger.info(f"Starting replication cycle {summary.cycle_number} in {summary.mode.value} mode")

            await self._execute(summary)

            failed = (summary.entities.failed if summary.entities else 0) + (
                summary.media.items_failed if summary.media else 0
            )
            summary.status = RunStatus.PARTIAL if failed else RunStatus.SUCCESS

        except asyncio.CancelledError:
            self._set_state(ReplicationState.IDLE)
            self._idle.set()
            raise

        except Exception as e:
            self._set_state(ReplicationState.FAILED)
            summary.status = RunStatus.FAILED
            summary.error = str(e)
            logger.error(
                f"Replication cycle {summary.cycle_number} failed: {e}",
                exc_info=not isinstance(e, ReplicationException),
                extra={"error_context": e.to_dict() if isinstance(e, ReplicationException) else {}}
            )

        summary.completed_at = self._now()
        summary.duration_seconds = round(self._clock() - started, 3)
        if self.governor is not None:
            summary.breakers = self.governor.snapshot()

        self._log_summary(summary)
        await self._record(summary)

        self.last_summary = summary
        self._set_state(ReplicationState.SLEEPING)
        self._idle.set()
        return summary

    def _log_summary(self, summary: CycleSummary):
        processed = summary.entities.processed if summary.entities else 0
        rate = throughput(processed, summary.duration_seconds)
        media_items = summary.media.items_written if summary.media else 0
        logger.info(
            f"Cycle {summary.cycle_number} ({summary.mode.value}) finished with status "
            f"{summary.status.value} in {summary.duration_seconds}s: "
            f"{processed} listings ({rate} records/sec, ~{int(rate * 60)} records/min), "
            f"{media_items} media items"
        )
        if summary.breakers:
            logger.info(f"Circuit breakers: {summary.breakers}")

    async def _record(self, summary: CycleSummary):
        if self.run_log is None:
            return
        try:
            await self.run_log.record(summary)
        except ReplicationException as e:
            logger.error(f"Failed to record cycle summary: {e}", extra={"error_context": e.to_dict()})

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for the in-flight cycle to finish; False on timeout"""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True
