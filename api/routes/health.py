"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, EntitySyncInfo
from models.base import EntityKind, SyncStatus
from models.local_record import ENTITY_MODELS
from models.sync_run import SyncRun
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Latest sync run status for every entity kind
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    entities = []
    failed_kinds = 0

    if db_connected:
        try:
            for kind in EntityKind:
                last_run = (await db.execute(
                    select(SyncRun)
                    .where(SyncRun.entity_kind == kind)
                    .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                    .limit(1)
                )).scalar_one_or_none()

                last_success_at = (await db.execute(
                    select(func.max(SyncRun.completed_at))
                    .where(SyncRun.entity_kind == kind, SyncRun.status == SyncStatus.SUCCESS)
                )).scalar()

                local_records = (await db.execute(
                    select(func.count()).select_from(ENTITY_MODELS[kind])
                )).scalar() or 0

                if last_run is not None and last_run.status == SyncStatus.FAILED:
                    failed_kinds += 1

                entities.append(EntitySyncInfo(
                    entity_kind=kind,
                    last_status=last_run.status if last_run else None,
                    last_run_at=last_run.started_at if last_run else None,
                    last_success_at=last_success_at,
                    last_error_message=last_run.error_message if last_run else None,
                    local_records=local_records,
                ))
        except Exception as e:
            logger.error(f"Failed to fetch sync status: {str(e)}")

    # Status calculation is handled by the validator in HealthCheckResponse
    return HealthCheckResponse(
        database_connected=db_connected,
        entities=entities,
        total_kinds=len(entities),
        failed_kinds=failed_kinds,
    )
