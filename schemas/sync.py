"""
Pydantic schemas for sync run summaries and catalog listings
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from uuid import UUID
from models.base import EntityKind, DeclaredType, SyncStatus, SyncState
from core.exceptions import SyncException


class RecordError(BaseModel):
    """One non-fatal error captured during a sync run"""
    error_type: str
    message: str
    remote_id: Optional[str] = None
    field_label: Optional[str] = None
    column: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(
        cls,
        error: Exception,
        remote_id: Optional[str] = None,
        field_label: Optional[str] = None,
        column: Optional[str] = None
    ) -> "RecordError":
        if isinstance(error, SyncException):
            message = error.message
            if error.original_exception:
                message += f" ({type(error.original_exception).__name__}: {error.original_exception})"
            context = error.context
            remote_id = remote_id or context.get("remote_id")
            field_label = field_label or context.get("field_label")
            column = column or context.get("column")
        else:
            message = str(error)
        return cls(
            error_type=type(error).__name__,
            message=message[:1000],
            remote_id=remote_id,
            field_label=field_label,
            column=column,
        )


class SyncRunSummary(BaseModel):
    """Operator-facing summary of a sync run"""
    run_id: UUID
    entity_kind: EntityKind
    status: SyncStatus
    final_state: Optional[SyncState] = None
    cancelled: bool = False

    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    pages_processed: int = 0
    records_fetched: int = 0
    records_upserted: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    records_failed: int = 0
    new_fields_discovered: int = 0
    fields_materialized: int = 0
    type_conflicts: int = 0

    error_count: int = 0
    errors: List[RecordError] = Field(default_factory=list)
    error_message: Optional[str] = None

    updated_since: Optional[datetime] = None
    watermark: Optional[datetime] = None
    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None

    class Config:
        from_attributes = True


class FieldCatalogEntryInfo(BaseModel):
    """Catalog entry with usage statistics"""
    label: str
    declared_type: DeclaredType
    local_column: str
    local_sql_type: str
    usage_count: int
    first_seen_at: datetime
    last_seen_at: datetime

    class Config:
        from_attributes = True


class CatalogStats(BaseModel):
    """Aggregate catalog usage statistics"""
    total_fields: int = 0
    fields_by_type: Dict[str, int] = Field(default_factory=dict)
    never_populated: int = 0
    most_used: List[FieldCatalogEntryInfo] = Field(default_factory=list)


class SyncTriggerRequest(BaseModel):
    """Body of the manual "run sync" action"""
    entity_kinds: Optional[List[EntityKind]] = Field(
        None, description="Kinds to synchronize; all kinds when omitted"
    )


class SyncTriggerResponse(BaseModel):
    """Response of the manual "run sync" action"""
    runs: List[SyncRunSummary]
    failed_kinds: List[EntityKind] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
