"""
Entry points shared by the API, the scheduler and the command-line script
"""

import asyncio
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence
import logging

from sqlalchemy import delete

from core.config import settings
from core.database import async_session_maker
from ingestion.extractors.remote_client import RemoteRecordClient
from ingestion.extractors.token_manager import TokenManager
from ingestion.runner import SyncOrchestrator
from models.base import EntityKind, SyncStatus, utc_now
from models.sync_run import SyncRun
from schemas.sync import SyncRunSummary

logger = logging.getLogger(__name__)

# One pass per entity kind at a time within this process
_kind_locks: Dict[EntityKind, asyncio.Lock] = {}

# Token managers shared by every client built for the same database, so
# API triggers and the scheduler refresh through one lock
_token_managers: Dict[object, TokenManager] = {}


def default_client_factory(session_factory=async_session_maker) -> Callable[[], RemoteRecordClient]:
    """Client factory backed by settings and the persisted OAuth token"""
    token_manager = _token_managers.get(session_factory)
    if token_manager is None:
        token_manager = TokenManager.from_settings(session_factory=session_factory)
        _token_managers[session_factory] = token_manager

    def _factory() -> RemoteRecordClient:
        return RemoteRecordClient(token_manager=token_manager)

    return _factory


async def run_sync(
    entity_kinds: Optional[Sequence[EntityKind]] = None,
    session_factory=async_session_maker,
    client_factory: Optional[Callable[[], RemoteRecordClient]] = None,
    concurrent: Optional[bool] = None,
    cancel_event: Optional[asyncio.Event] = None
) -> List[SyncRunSummary]:
    """
    Run one sync pass per entity kind.

    Each kind gets its own session and client; pages within a kind stay
    sequential. Kinds run concurrently when SYNC_CONCURRENT_KINDS is on.

    Returns:
        Summaries of the runs that completed; a kind whose run raised an
        unexpected error, or that already had a pass in flight, is logged
        and omitted
    """
    kinds = [EntityKind(k) for k in (entity_kinds or list(EntityKind))]
    client_factory = client_factory or default_client_factory(session_factory)
    concurrent = settings.SYNC_CONCURRENT_KINDS if concurrent is None else concurrent

    async def _run_one(kind: EntityKind) -> Optional[SyncRunSummary]:
        lock = _kind_locks.setdefault(kind, asyncio.Lock())
        if lock.locked():
            logger.warning(f"Sync for {kind.value} is already running, skipping")
            return None
        async with lock:
            async with session_factory() as session:
                async with client_factory() as client:
                    return await SyncOrchestrator(session, client).run(kind, cancel_event)

    if concurrent and len(kinds) > 1:
        results = await asyncio.gather(*(_run_one(kind) for kind in kinds), return_exceptions=True)
    else:
        results = []
        for kind in kinds:
            try:
                results.append(await _run_one(kind))
            except Exception as e:
                results.append(e)

    summaries = []
    for kind, result in zip(kinds, results):
        if isinstance(result, Exception):
            logger.error(f"Sync for {kind.value} did not complete: {result}")
            continue
        if result is None:
            continue
        summaries.append(result)
    return summaries


async def cleanup_old_runs(session_factory=async_session_maker, days: Optional[int] = None) -> int:
    """
    Delete finished sync runs older than the retention window.

    Returns:
        Number of deleted runs
    """
    days = settings.SYNC_RUN_RETENTION_DAYS if days is None else days
    cutoff = utc_now() - timedelta(days=days)

    async with session_factory() as session:
        result = await session.execute(
            delete(SyncRun)
            .where(SyncRun.started_at < cutoff, SyncRun.status != SyncStatus.RUNNING)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    deleted = result.rowcount or 0
    logger.info(f"Deleted {deleted} sync runs older than {days} days")
    return deleted
