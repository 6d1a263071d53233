"""
Sync Runner - Orchestrates fetch, coerce, evolve and merge for one entity kind.

This module provides robust sync orchestration with:
- An explicit state machine (IDLE → FETCHING → COERCING → EVOLVING → MERGING)
- Partial failure support (bad fields and records never stop the run)
- Page-granular cancellation and resumable cursors
- Additive schema evolution as new custom fields appear
- A persisted SyncRun audit record for every run
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, List, Optional, Tuple
import time
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import CatalogError, FetchError, SyncException
from ingestion.catalog import FieldCatalog
from ingestion.extractors.remote_client import Cursor, RemoteRecordClient
from ingestion.loaders.merge_loader import MergeLoader
from ingestion.schema_planner import SchemaEvolutionPlanner, SchemaEvolver
from ingestion.transformers.coercion import TypeCoercionEngine
from ingestion.transformers.normalizer import RecordNormalizer
from models.base import EntityKind, SyncState, SyncStatus, utc_now
from models.local_record import table_name_for
from models.sync_run import SyncRun
from schemas.sync import RecordError, SyncRunSummary

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Counters accumulated in memory and written to the SyncRun at completion"""
    max_errors: int = 50
    pages_processed: int = 0
    records_fetched: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    records_failed: int = 0
    new_fields_discovered: int = 0
    fields_materialized: int = 0
    type_conflicts: int = 0
    error_count: int = 0
    cancelled: bool = False
    cursor_after: Optional[str] = None
    errors: Deque[RecordError] = field(default_factory=deque)

    def __post_init__(self):
        self.errors = deque(maxlen=self.max_errors)

    def add_error(self, error: RecordError) -> None:
        """Keep only the most recent errors; error_count keeps the total"""
        self.error_count += 1
        self.errors.append(error)

    @property
    def records_upserted(self) -> int:
        return self.records_created + self.records_updated


class SyncOrchestrator:
    """
    Production-grade sync orchestrator for one entity kind at a time.

    Responsibilities:
    - Drive the per-page pipeline and state machine
    - Fail the run only on fetch or catalog failures
    - Record every non-fatal error against the run
    - Decide where the run starts (resume or incremental)
    """

    def __init__(
        self,
        db_session: AsyncSession,
        client: RemoteRecordClient,
        catalog: Optional[FieldCatalog] = None,
        coercion: Optional[TypeCoercionEngine] = None,
        planner: Optional[SchemaEvolutionPlanner] = None,
        max_run_errors: Optional[int] = None,
        incremental: Optional[bool] = None
    ):
        self.db = db_session
        self.client = client
        self.catalog = catalog or FieldCatalog(db_session)
        self.coercion = coercion or TypeCoercionEngine(settings.NONNEGATIVE_CURRENCY_LABELS)
        self.planner = planner or SchemaEvolutionPlanner()
        self.max_run_errors = max_run_errors or settings.MAX_RUN_ERRORS
        self.incremental = settings.SYNC_INCREMENTAL if incremental is None else incremental
        self.stale_after_minutes = settings.SYNC_RUN_STALE_MINUTES

        self.state = SyncState.IDLE
        self.transitions: List[SyncState] = []

    def _transition(self, state: SyncState) -> None:
        if state != self.state:
            logger.debug(f"Sync state {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    async def run(
        self,
        entity_kind: EntityKind,
        cancel_event: Optional[asyncio.Event] = None
    ) -> SyncRunSummary:
        """
        Run one full synchronization pass.

        Pipeline per page:
        1. Fetch - one page from the remote API
        2. Coerce - resolve labels, record usage, coerce values
        3. Evolve - add columns for fields in use (only when needed)
        4. Merge - upsert each record in its own transaction

        Returns:
            SyncRunSummary of the persisted SyncRun

        Raises:
            SyncException: Only for unexpected errors; the run is still
                persisted as FAILED first
        """
        entity_kind = EntityKind(entity_kind)
        table_name = table_name_for(entity_kind)
        stats = RunStats(max_errors=self.max_run_errors)
        started = time.monotonic()

        cursor_before, updated_since, watermark = await self._starting_point(entity_kind)
        run_pk = await self._start_run(entity_kind, cursor_before, updated_since, watermark)
        stats.cursor_after = cursor_before

        evolver = SchemaEvolver(self.db)
        loader = MergeLoader(self.db, table_name)
        normalizer = RecordNormalizer(self.catalog, self.coercion)

        status = SyncStatus.SUCCESS
        error_message = None
        unexpected: Optional[Exception] = None

        labels_before = len(self.catalog.new_labels)
        conflicts_before = self.catalog.type_conflicts

        try:
            cursor: Optional[Cursor] = self._initial_cursor(entity_kind, cursor_before)
            stats.cursor_after = cursor.encode()

            logger.info(
                f"Starting {entity_kind.value} sync from {stats.cursor_after}"
                + (f" (updated since {updated_since.isoformat()})" if updated_since else "")
            )

            await self.catalog.ensure_loaded()

            while cursor is not None:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"{entity_kind.value} sync cancelled before {cursor.encode()}")
                    stats.cancelled = True
                    break

                # --------------------------------------------------
                # PHASE 1: FETCH
                # --------------------------------------------------
                self._transition(SyncState.FETCHING)
                page = await self.client.fetch_page(entity_kind, cursor, updated_since)
                stats.records_fetched += len(page.records) + len(page.parse_errors)
                for parse_error in page.parse_errors:
                    stats.records_failed += 1
                    stats.add_error(RecordError.from_exception(parse_error))

                # --------------------------------------------------
                # PHASE 2: COERCE
                # --------------------------------------------------
                self._transition(SyncState.COERCING)
                normalized = []
                seen_labels = set()
                for entity in page.records:
                    record = await normalizer.normalize(entity)
                    normalized.append(record)
                    seen_labels.update(record.labels)
                    for error in record.errors:
                        stats.add_error(error)
                await self.catalog.flush_usage()

                # --------------------------------------------------
                # PHASE 3: EVOLVE (only when the page needs new columns)
                # --------------------------------------------------
                entries = [self.catalog.get(label) for label in seen_labels]
                live_columns = await evolver.live_columns(table_name)
                plan = self.planner.plan([e for e in entries if e is not None], live_columns, table_name)
                if not plan.is_empty:
                    self._transition(SyncState.EVOLVING)
                    evolution = await evolver.apply(plan)
                    stats.fields_materialized += len(evolution.materialized_labels)
                    for error in evolution.errors:
                        stats.add_error(RecordError.from_exception(error))
                    loader.invalidate()

                # --------------------------------------------------
                # PHASE 4: MERGE
                # --------------------------------------------------
                self._transition(SyncState.MERGING)
                load_result = await loader.load(normalized)
                stats.records_created += load_result.created
                stats.records_updated += load_result.updated
                stats.records_unchanged += load_result.unchanged
                stats.records_failed += load_result.failed
                for error in load_result.errors:
                    stats.add_error(error)

                stats.pages_processed += 1
                cursor = page.next_cursor
                stats.cursor_after = cursor.encode() if cursor else None

            self._transition(SyncState.IDLE)
            if stats.error_count:
                status = SyncStatus.PARTIAL

        except (FetchError, CatalogError) as e:
            logger.error(f"{entity_kind.value} sync failed: {e}", extra={"error_context": e.to_dict()})
            await self.db.rollback()
            self._transition(SyncState.FAILED)
            status = SyncStatus.FAILED
            error_message = e.message
            stats.add_error(RecordError.from_exception(e))

        except Exception as e:
            logger.exception(f"Unexpected error during {entity_kind.value} sync")
            await self.db.rollback()
            self._transition(SyncState.FAILED)
            status = SyncStatus.FAILED
            error_message = f"Unexpected error: {e}"
            stats.add_error(RecordError.from_exception(e))
            unexpected = e

        stats.new_fields_discovered = len(self.catalog.new_labels) - labels_before
        stats.type_conflicts = self.catalog.type_conflicts - conflicts_before

        summary = await self._complete_run(
            run_pk, stats, status, error_message, duration=time.monotonic() - started
        )

        if unexpected is not None:
            raise SyncException(
                "Sync run failed unexpectedly",
                context={"entity_kind": entity_kind.value, "run_id": str(summary.run_id)},
                original_exception=unexpected
            )
        return summary

    # ------------------------------------------------------------------
    # SyncRun bookkeeping
    # ------------------------------------------------------------------

    def _initial_cursor(self, entity_kind: EntityKind, cursor_before: Optional[str]) -> Cursor:
        try:
            return Cursor.decode(cursor_before) or Cursor.first_page()
        except ValueError:
            logger.warning(f"Stored {entity_kind.value} cursor {cursor_before!r} is unreadable, restarting from page 1")
            return Cursor.first_page()

    async def _starting_point(
        self,
        entity_kind: EntityKind
    ) -> Tuple[Optional[str], Optional[datetime], Optional[datetime]]:
        """
        Resume an interrupted run, or start incrementally from the last success.

        A resumed run keeps the watermark of the run it continues, so the next
        incremental run still covers the pages read before the interruption.

        Returns:
            (cursor_before, updated_since, watermark); watermark is None when
            a new chain starts
        """
        await self._expire_stale_runs(entity_kind)

        result = await self.db.execute(
            select(SyncRun)
            .where(SyncRun.entity_kind == entity_kind, SyncRun.status != SyncStatus.RUNNING)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        )
        previous = result.scalar_one_or_none()

        if previous is not None and previous.cursor_after and (
            previous.status == SyncStatus.FAILED or previous.cancelled
        ):
            logger.info(f"Resuming {entity_kind.value} sync from {previous.cursor_after}")
            return previous.cursor_after, previous.updated_since, previous.watermark or previous.started_at

        if not self.incremental:
            return None, None, None

        result = await self.db.execute(
            select(func.coalesce(SyncRun.watermark, SyncRun.started_at))
            .where(
                SyncRun.entity_kind == entity_kind,
                SyncRun.status.in_([SyncStatus.SUCCESS, SyncStatus.PARTIAL]),
                SyncRun.cancelled.is_(False),
            )
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        )
        last_success = result.scalar_one_or_none()
        return None, last_success, None

    async def _expire_stale_runs(self, entity_kind: EntityKind) -> int:
        """
        Mark RUNNING runs that outlived SYNC_RUN_STALE_MINUTES as FAILED.

        Such a run belongs to a process that died or lost its database
        connection before completing. Its starting cursor is kept as the
        resume point.
        """
        cutoff = utc_now() - timedelta(minutes=self.stale_after_minutes)
        result = await self.db.execute(
            update(SyncRun)
            .where(
                SyncRun.entity_kind == entity_kind,
                SyncRun.status == SyncStatus.RUNNING,
                SyncRun.started_at < cutoff,
            )
            .values(
                status=SyncStatus.FAILED,
                final_state=SyncState.FAILED,
                completed_at=utc_now(),
                error_message=f"Run did not complete within {self.stale_after_minutes} minutes",
                cursor_after=func.coalesce(SyncRun.cursor_after, SyncRun.cursor_before),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        expired = result.rowcount or 0
        if expired:
            logger.warning(f"Expired {expired} stale {entity_kind.value} sync runs")
        return expired

    async def _start_run(
        self,
        entity_kind: EntityKind,
        cursor_before: Optional[str],
        updated_since: Optional[datetime],
        watermark: Optional[datetime] = None
    ) -> int:
        started_at = utc_now()
        sync_run = SyncRun(
            entity_kind=entity_kind,
            status=SyncStatus.RUNNING,
            started_at=started_at,
            cursor_before=cursor_before,
            updated_since=updated_since,
            watermark=watermark or started_at,
            errors=[],
        )
        try:
            self.db.add(sync_run)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CatalogError(
                "Could not record sync run start",
                context={"entity_kind": entity_kind.value, "table_name": "sync_runs"},
                original_exception=e
            )
        return sync_run.id

    async def _complete_run(
        self,
        run_pk: int,
        stats: RunStats,
        status: SyncStatus,
        error_message: Optional[str],
        duration: float
    ) -> SyncRunSummary:
        final_state = SyncState.FAILED if status == SyncStatus.FAILED else SyncState.IDLE
        values = dict(
            status=status,
            final_state=final_state,
            cancelled=stats.cancelled,
            completed_at=utc_now(),
            duration_seconds=round(duration, 3),
            pages_processed=stats.pages_processed,
            records_fetched=stats.records_fetched,
            records_upserted=stats.records_upserted,
            records_created=stats.records_created,
            records_updated=stats.records_updated,
            records_unchanged=stats.records_unchanged,
            records_failed=stats.records_failed,
            new_fields_discovered=stats.new_fields_discovered,
            fields_materialized=stats.fields_materialized,
            type_conflicts=stats.type_conflicts,
            error_count=stats.error_count,
            errors=[e.model_dump(mode="json") for e in stats.errors],
            error_message=error_message,
            cursor_after=stats.cursor_after,
        )

        # One retry on a fresh transaction; a run left RUNNING is only
        # recovered once it goes stale
        for attempt in (1, 2):
            try:
                await self.db.execute(
                    update(SyncRun)
                    .where(SyncRun.id == run_pk)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                break
            except SQLAlchemyError as e:
                await self.db.rollback()
                if attempt == 2:
                    raise CatalogError(
                        "Could not record sync run completion",
                        context={"table_name": "sync_runs", "run_pk": run_pk},
                        original_exception=e
                    )
                logger.warning(f"Recording completion of sync run {run_pk} failed, retrying: {e}")

        result = await self.db.execute(
            select(SyncRun).where(SyncRun.id == run_pk).execution_options(populate_existing=True)
        )
        summary = SyncRunSummary.model_validate(result.scalar_one())

        logger.info(
            f"{summary.entity_kind.value} sync {summary.status.value}: "
            f"{summary.pages_processed} pages, {summary.records_fetched} fetched, "
            f"{summary.records_created} created, {summary.records_updated} updated, "
            f"{summary.records_unchanged} unchanged, {summary.records_failed} failed, "
            f"{summary.fields_materialized} fields materialized, {summary.error_count} errors"
        )
        return summary
