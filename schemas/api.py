"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import datetime, timezone
from models.base import EntityKind, SyncStatus
from schemas.sync import SyncRunSummary, FieldCatalogEntryInfo, CatalogStats


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Health Check Schemas
# ============================================================================

class EntitySyncInfo(BaseModel):
    """Latest sync state of one entity kind"""
    entity_kind: EntityKind
    last_status: Optional[SyncStatus] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    local_records: int = 0

    class Config:
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=_utc_now)
    database_connected: bool
    entities: List[EntitySyncInfo] = Field(default_factory=list)
    total_kinds: int = 0
    failed_kinds: int = 0
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        failed = values.get("failed_kinds", 0)
        total = values.get("total_kinds", 0)

        if total == 0 or failed == 0:
            return "healthy"
        elif failed < total:
            return "degraded"
        else:
            return "unhealthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2025-08-11T10:30:00Z",
                "database_connected": True,
                "total_kinds": 3,
                "failed_kinds": 0,
                "entities": [
                    {
                        "entity_kind": "matters",
                        "last_status": "success",
                        "last_run_at": "2025-08-11T10:15:00Z",
                        "last_success_at": "2025-08-11T10:15:00Z",
                        "local_records": 1342
                    }
                ]
            }
        }


# ============================================================================
# Sync Run Schemas
# ============================================================================

class SyncRunListResponse(BaseModel):
    """Recent sync runs, newest first"""
    runs: List[SyncRunSummary]
    total: int


# ============================================================================
# Catalog Schemas
# ============================================================================

class CatalogResponse(BaseModel):
    """Field catalog listing with usage statistics"""
    entries: List[FieldCatalogEntryInfo]
    stats: CatalogStats

    class Config:
        json_schema_extra = {
            "example": {
                "entries": [
                    {
                        "label": "Rel Value",
                        "declared_type": "currency",
                        "local_column": "rel_value",
                        "local_sql_type": "NUMERIC(15, 2)",
                        "usage_count": 212,
                        "first_seen_at": "2025-08-01T09:00:00Z",
                        "last_seen_at": "2025-08-11T10:15:00Z"
                    }
                ],
                "stats": {
                    "total_fields": 1,
                    "fields_by_type": {"currency": 1},
                    "never_populated": 0
                }
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Unknown entity kind",
                "detail": "Entity kind must be one of: matters, contacts, tasks",
                "timestamp": "2025-08-11T10:30:00Z"
            }
        }
