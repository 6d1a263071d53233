"""
Field catalog listing with usage statistics
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from api.dependencies import get_db
from ingestion.catalog import FieldCatalog
from models.field_catalog import FieldCatalogEntry
from schemas.api import CatalogResponse
from schemas.sync import FieldCatalogEntryInfo
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Catalog"])


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(db: AsyncSession = Depends(get_db)):
    """
    Every known custom field label with its column, type and usage.

    Fields with usage_count 0 have been seen but never populated.
    """
    result = await db.execute(select(FieldCatalogEntry).order_by(FieldCatalogEntry.label))
    entries = [FieldCatalogEntryInfo.model_validate(row) for row in result.scalars().all()]

    stats = await FieldCatalog(db).usage_stats()
    return CatalogResponse(entries=entries, stats=stats)
