"""
Manual sync trigger and sync run history endpoints
"""

from typing import Optional
from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db, get_session_factory, get_client_factory
from ingestion.service import run_sync
from models.base import EntityKind
from models.sync_run import SyncRun
from schemas.api import SyncRunListResponse
from schemas.sync import SyncRunSummary, SyncTriggerRequest, SyncTriggerResponse
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


async def _trigger(request: Request, kinds, session_factory, client_factory) -> SyncTriggerResponse:
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(f"[{request_id}] Sync requested for {', '.join(k.value for k in kinds)}")

    summaries = await run_sync(kinds, session_factory=session_factory, client_factory=client_factory)
    completed = {s.entity_kind for s in summaries}

    return SyncTriggerResponse(
        runs=summaries,
        failed_kinds=[k for k in kinds if k not in completed],
        meta={
            "request_id": request_id,
            "api_latency_ms": int((time.time() - start_time) * 1000),
        },
    )


@router.post("", response_model=SyncTriggerResponse)
async def sync_all(
    request: Request,
    body: Optional[SyncTriggerRequest] = Body(None),
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_client_factory),
):
    """
    Run a sync pass for the requested entity kinds (all kinds when omitted).

    Returns the SyncRun summary of every kind that completed.
    """
    kinds = (body.entity_kinds if body and body.entity_kinds else None) or list(EntityKind)
    return await _trigger(request, kinds, session_factory, client_factory)


@router.post("/{entity_kind}", response_model=SyncTriggerResponse)
async def sync_kind(
    entity_kind: EntityKind,
    request: Request,
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_client_factory),
):
    """Run a sync pass for one entity kind"""
    return await _trigger(request, [entity_kind], session_factory, client_factory)


@router.get("/runs", response_model=SyncRunListResponse)
async def list_runs(
    entity_kind: Optional[EntityKind] = Query(None, description="Filter by entity kind"),
    limit: int = Query(20, ge=1, le=200, description="Number of runs to return"),
    db: AsyncSession = Depends(get_db),
):
    """Recent sync runs, newest first"""
    query = select(SyncRun)
    count_query = select(func.count()).select_from(SyncRun)
    if entity_kind is not None:
        query = query.where(SyncRun.entity_kind == entity_kind)
        count_query = count_query.where(SyncRun.entity_kind == entity_kind)

    result = await db.execute(query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit))
    total = (await db.execute(count_query)).scalar() or 0

    return SyncRunListResponse(
        runs=[SyncRunSummary.model_validate(run) for run in result.scalars().all()],
        total=total,
    )
