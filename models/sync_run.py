from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Boolean, Index, Uuid
import uuid
from models.base import Base, EntityKind, SyncStatus, SyncState, JSONType, PrimaryKeyType, utc_now


class SyncRun(Base):
    """
    Audit record of one synchronization pass for one entity kind.

    Purpose:
    - Audit trail of all sync runs
    - Bounded list of the most recent non-fatal errors
    - Starting cursor / updated_since for the next run
    """
    __tablename__ = "sync_runs"

    id = Column(PrimaryKeyType, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    entity_kind = Column(Enum(EntityKind), nullable=False, index=True)

    # Run state
    status = Column(Enum(SyncStatus), default=SyncStatus.RUNNING, nullable=False, index=True)
    final_state = Column(Enum(SyncState), nullable=True)
    cancelled = Column(Boolean, nullable=False, default=False)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    pages_processed = Column(Integer, default=0)
    records_fetched = Column(Integer, default=0)
    records_upserted = Column(Integer, default=0)
    records_created = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_unchanged = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    new_fields_discovered = Column(Integer, default=0)
    fields_materialized = Column(Integer, default=0)
    type_conflicts = Column(Integer, default=0)

    # Error tracking
    error_count = Column(Integer, default=0)
    errors = Column(JSONType, nullable=True)  # Most recent RecordErrors only
    error_message = Column(Text, nullable=True)

    # Resume info
    updated_since = Column(DateTime(timezone=True), nullable=True)
    # Start of the run chain this run belongs to; the next incremental run
    # fetches records updated since this instant
    watermark = Column(DateTime(timezone=True), nullable=True)
    cursor_before = Column(String(255), nullable=True)
    cursor_after = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_sync_run_kind_started", "entity_kind", "started_at"),
    )
