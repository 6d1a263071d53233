# ============================================================================
# File: tests/integration/test_sync_pipeline.py
# ============================================================================

import asyncio
import pytest
import httpx
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from core.exceptions import CatalogError
from ingestion.catalog import FieldCatalog
from ingestion.loaders.merge_loader import MergeLoader
from ingestion.runner import RunStats, SyncOrchestrator
from models.base import EntityKind, SyncState, SyncStatus, utc_now
from models.sync_run import SyncRun
from schemas.remote import ensure_utc
from tests.factories import FakeRemote, custom_field, matter


async def matter_rows(db_session):
    table = await MergeLoader(db_session, "matters").get_table()
    result = await db_session.execute(select(table).order_by(table.c.remote_id))
    return [dict(row) for row in result.mappings().all()]


async def matter_columns(db_session):
    table = await MergeLoader(db_session, "matters").get_table()
    return set(table.c.keys())


@pytest.mark.asyncio
async def test_new_custom_field_is_materialized(db_session):
    """
    First sight of a custom field:
    1. Label registered in the catalog
    2. Column added to matters
    3. Coerced value stored
    """
    remote = FakeRemote([
        matter("m-1", name="Smith 1031", custom_fields=[custom_field("Rel Value", "Currency", 212000)])
    ])
    orchestrator = SyncOrchestrator(db_session, remote.client())

    summary = await orchestrator.run(EntityKind.MATTERS)

    assert summary.status == SyncStatus.SUCCESS
    assert summary.records_fetched == 1
    assert summary.records_created == 1
    assert summary.records_upserted == 1
    assert summary.new_fields_discovered == 1
    assert summary.fields_materialized == 1
    assert summary.final_state == SyncState.IDLE
    assert SyncState.EVOLVING in orchestrator.transitions

    rows = await matter_rows(db_session)
    assert len(rows) == 1
    assert rows[0]["remote_id"] == "m-1"
    assert rows[0]["name"] == "Smith 1031"
    assert rows[0]["rel_value"] == Decimal("212000.00")
    assert rows[0]["last_synced_at"] is not None

    catalog = FieldCatalog(db_session)
    await catalog.load()
    entry = catalog.get("Rel Value")
    assert entry.local_column == "rel_value"
    assert entry.usage_count == 1


@pytest.mark.asyncio
async def test_local_edit_survives_resync(db_session):
    """
    Local ownership:
    1. Sync a record
    2. A human edits rel_value
    3. The remote changes rel_value and status
    4. Re-sync keeps the local value, takes the remote status
    """
    remote = FakeRemote([matter("m-1", custom_fields=[custom_field("Rel Value", "Currency", 212000)])])
    await SyncOrchestrator(db_session, remote.client(), incremental=False).run(EntityKind.MATTERS)

    loader = MergeLoader(db_session, "matters")
    row_id = (await matter_rows(db_session))[0]["id"]
    await loader.apply_local_edit(row_id, {"rel_value": Decimal("250000.00")})

    remote.records = [matter("m-1", status="Closed", custom_fields=[custom_field("Rel Value", "Currency", 215000)])]
    summary = await SyncOrchestrator(db_session, remote.client(), incremental=False).run(EntityKind.MATTERS)

    row = (await matter_rows(db_session))[0]
    assert summary.records_updated == 1
    assert row["rel_value"] == Decimal("250000.00")
    assert row["status"] == "Closed"
    assert row["local_owned_fields"] == ["rel_value"]


@pytest.mark.asyncio
async def test_field_on_one_record_across_pages(db_session):
    """
    500 records over 5 pages; only one carries "New Field X".
    The column exists, exactly one row has a value.
    """
    records = []
    for i in range(500):
        fields = [custom_field("New Field X", "TextBox", "present")] if i == 250 else []
        records.append(matter(f"m-{i:03d}", custom_fields=fields))
    remote = FakeRemote(records, page_size=100)

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert summary.status == SyncStatus.SUCCESS
    assert summary.pages_processed == 5
    assert summary.records_created == 500
    assert summary.cursor_after is None
    assert len(remote.requests) == 5

    table = await MergeLoader(db_session, "matters").get_table()
    assert "new_field_x" in table.c
    non_null = (await db_session.execute(
        select(func.count()).select_from(table).where(table.c.new_field_x.is_not(None))
    )).scalar()
    null = (await db_session.execute(
        select(func.count()).select_from(table).where(table.c.new_field_x.is_(None))
    )).scalar()
    assert non_null == 1
    assert null == 499


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db_session):
    """
    Running twice against the same remote data:
    - no duplicates
    - rows byte-identical
    - second run is incremental
    """
    remote = FakeRemote([
        matter("m-1", custom_fields=[custom_field("Rel Value", "Currency", 195816.28)]),
        matter("m-2", custom_fields=[custom_field("Closing Date", "Date", "2025-09-30T00:00:00Z")]),
    ])

    first = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)
    rows_before = await matter_rows(db_session)

    second = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)
    rows_after = await matter_rows(db_session)

    assert first.records_created == 2
    assert second.records_created == 0
    assert second.records_updated == 0
    assert second.records_unchanged == 2
    assert second.fields_materialized == 0
    assert rows_before == rows_after
    assert "updated_since" not in remote.requests[0].url.params
    assert "updated_since" in remote.requests[-1].url.params


@pytest.mark.asyncio
async def test_bad_field_value_gives_partial_run(db_session):
    """One uncoercible value: NULL stored, run PARTIAL, record still written"""
    remote = FakeRemote([
        matter("m-1", custom_fields=[custom_field("Rel Value", "Currency", "abc")]),
        matter("m-2", custom_fields=[custom_field("Rel Value", "Currency", 1000)]),
    ])

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert summary.status == SyncStatus.PARTIAL
    assert summary.records_created == 2
    assert summary.records_failed == 0
    assert summary.error_count == 1
    assert summary.errors[0].field_label == "Rel Value"
    assert summary.errors[0].remote_id == "m-1"

    rows = {row["remote_id"]: row for row in await matter_rows(db_session)}
    assert rows["m-1"]["rel_value"] is None
    assert rows["m-2"]["rel_value"] == Decimal("1000.00")


@pytest.mark.asyncio
async def test_unparseable_record_counts_as_failed(db_session):
    remote = FakeRemote([matter("m-1"), {"display_name": "missing id"}])

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert summary.status == SyncStatus.PARTIAL
    assert summary.records_fetched == 2
    assert summary.records_failed == 1
    assert summary.records_created == 1


@pytest.mark.asyncio
async def test_fetch_failure_fails_run_then_resumes(db_session):
    """
    Fatal fetch error:
    1. Page 2 answers 404, run FAILED with cursor_after at page 2
    2. Page 1 records stay committed
    3. Next run resumes from page 2
    """
    records = [matter(f"m-{i}") for i in range(4)]
    remote = FakeRemote(records, page_size=2)
    broken = {"page": "2"}

    def handler(request):
        if request.url.params.get("page") == broken.get("page"):
            remote.requests.append(request)
            return httpx.Response(404)
        return FakeRemote.handler(remote, request)

    remote.handler = handler

    # -------------------------------------------------------
    # STEP 1: Failing run
    # -------------------------------------------------------
    failed = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert failed.status == SyncStatus.FAILED
    assert failed.final_state == SyncState.FAILED
    assert failed.cursor_after == "page:2"
    assert failed.records_created == 2
    assert failed.errors[-1].error_type == "ResourceNotFoundError"
    assert len(await matter_rows(db_session)) == 2

    # -------------------------------------------------------
    # STEP 2: Resume
    # -------------------------------------------------------
    broken.clear()
    remote.requests.clear()
    resumed = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert resumed.status == SyncStatus.SUCCESS
    assert resumed.cursor_before == "page:2"
    assert resumed.records_created == 2
    assert remote.requests[0].url.params["page"] == "2"
    assert len(await matter_rows(db_session)) == 4


@pytest.mark.asyncio
async def test_cancellation_stops_at_page_boundary(db_session):
    records = [matter(f"m-{i}") for i in range(4)]
    remote = FakeRemote(records, page_size=2)
    cancel_event = asyncio.Event()

    def handler(request):
        response = FakeRemote.handler(remote, request)
        cancel_event.set()
        return response

    remote.handler = handler

    cancelled = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS, cancel_event)

    assert cancelled.cancelled is True
    assert cancelled.pages_processed == 1
    assert cancelled.cursor_after == "page:2"
    assert len(await matter_rows(db_session)) == 2

    resumed = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert resumed.cancelled is False
    assert resumed.cursor_before == "page:2"
    assert resumed.cursor_after is None
    assert len(await matter_rows(db_session)) == 4


@pytest.mark.asyncio
async def test_type_conflict_is_counted_not_applied(db_session):
    remote = FakeRemote([
        matter("m-1", custom_fields=[custom_field("Rel Value", "Currency", 100)]),
        matter("m-2", custom_fields=[custom_field("Rel Value", "TextBox", "250.75")]),
    ])

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert summary.type_conflicts == 1
    rows = {row["remote_id"]: row for row in await matter_rows(db_session)}
    assert rows["m-2"]["rel_value"] == Decimal("250.75")


@pytest.mark.asyncio
async def test_empty_field_is_cataloged_not_materialized(db_session):
    remote = FakeRemote([matter("m-1", custom_fields=[custom_field("Escrow Officer", "TextBox", "")])])

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert summary.new_fields_discovered == 1
    assert summary.fields_materialized == 0
    assert "escrow_officer" not in await matter_columns(db_session)

    catalog = FieldCatalog(db_session)
    await catalog.load()
    assert catalog.get("Escrow Officer").usage_count == 0


@pytest.mark.asyncio
async def test_sync_run_is_persisted(db_session):
    remote = FakeRemote([matter("m-1")])

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    stored = (await db_session.execute(select(SyncRun).where(SyncRun.run_id == summary.run_id))).scalar_one()
    assert stored.status == SyncStatus.SUCCESS
    assert stored.completed_at is not None
    assert stored.records_created == 1
    assert stored.errors == []


@pytest.mark.asyncio
async def test_incremental_after_resume_starts_from_failed_run(db_session):
    """
    Fail on page 2, resume, then run incrementally:
    the third run must ask for updates since the failed run started,
    since page 1 was last read by that run.
    """
    records = [matter(f"m-{i}") for i in range(4)]
    remote = FakeRemote(records, page_size=2)
    broken = {"page": "2"}

    def handler(request):
        if request.url.params.get("page") == broken.get("page"):
            remote.requests.append(request)
            return httpx.Response(404)
        return FakeRemote.handler(remote, request)

    remote.handler = handler

    failed = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)
    broken.clear()
    resumed = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert failed.status == SyncStatus.FAILED
    assert resumed.status == SyncStatus.SUCCESS
    assert resumed.watermark == failed.started_at

    remote.requests.clear()
    third = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert third.cursor_before is None
    assert third.updated_since == failed.started_at
    assert remote.requests[0].url.params["page"] == "1"
    assert remote.requests[0].url.params["updated_since"] == ensure_utc(failed.started_at).isoformat()
    assert third.watermark == third.started_at


@pytest.mark.asyncio
async def test_unreadable_stored_cursor_restarts_from_first_page(db_session):
    db_session.add(SyncRun(
        entity_kind=EntityKind.MATTERS,
        status=SyncStatus.FAILED,
        started_at=utc_now() - timedelta(hours=1),
        cursor_after="page:x",
        errors=[],
    ))
    await db_session.commit()
    remote = FakeRemote([matter("m-1")])

    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    assert summary.status == SyncStatus.SUCCESS
    assert summary.cursor_before == "page:x"
    assert summary.records_created == 1
    assert remote.requests[0].url.params["page"] == "1"
    running = await db_session.execute(
        select(func.count()).select_from(SyncRun).where(SyncRun.status == SyncStatus.RUNNING)
    )
    assert running.scalar() == 0


@pytest.mark.asyncio
async def test_stale_running_run_is_expired_and_resumed(db_session):
    """
    A RUNNING row whose process died:
    1. Older than the stale window, it is marked FAILED
    2. Its starting cursor becomes the resume point
    3. A recent RUNNING row is left alone
    """
    stale = SyncRun(
        entity_kind=EntityKind.MATTERS,
        status=SyncStatus.RUNNING,
        started_at=utc_now() - timedelta(hours=3),
        cursor_before="page:2",
        errors=[],
    )
    recent = SyncRun(
        entity_kind=EntityKind.MATTERS,
        status=SyncStatus.RUNNING,
        started_at=utc_now() - timedelta(minutes=5),
        errors=[],
    )
    db_session.add_all([stale, recent])
    await db_session.commit()

    remote = FakeRemote([matter(f"m-{i}") for i in range(4)], page_size=2)
    summary = await SyncOrchestrator(db_session, remote.client()).run(EntityKind.MATTERS)

    await db_session.refresh(stale)
    await db_session.refresh(recent)
    assert stale.status == SyncStatus.FAILED
    assert stale.final_state == SyncState.FAILED
    assert stale.completed_at is not None
    assert stale.cursor_after == "page:2"
    assert "did not complete" in stale.error_message
    assert recent.status == SyncStatus.RUNNING

    assert summary.status == SyncStatus.SUCCESS
    assert summary.cursor_before == "page:2"
    assert summary.records_created == 2


@pytest.mark.asyncio
async def test_run_completion_is_retried_once(db_session, monkeypatch):
    orchestrator = SyncOrchestrator(db_session, FakeRemote().client())
    run_pk = await orchestrator._start_run(EntityKind.MATTERS, None, None)

    original_commit = db_session.commit
    commits = []

    async def flaky_commit():
        commits.append(1)
        if len(commits) == 1:
            raise OperationalError("UPDATE sync_runs", {}, Exception("database is locked"))
        await original_commit()

    monkeypatch.setattr(db_session, "commit", flaky_commit)

    summary = await orchestrator._complete_run(run_pk, RunStats(), SyncStatus.SUCCESS, None, duration=0.5)

    assert len(commits) == 2
    assert summary.status == SyncStatus.SUCCESS
    assert summary.completed_at is not None


@pytest.mark.asyncio
async def test_run_completion_gives_up_after_second_failure(db_session, monkeypatch):
    orchestrator = SyncOrchestrator(db_session, FakeRemote().client())
    run_pk = await orchestrator._start_run(EntityKind.MATTERS, None, None)

    async def failing_commit():
        raise OperationalError("UPDATE sync_runs", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(CatalogError):
        await orchestrator._complete_run(run_pk, RunStats(), SyncStatus.SUCCESS, None, duration=0.5)
