"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (EntityKind, DeclaredType, SyncStatus, SyncState)
    field_catalog: Custom-field label -> local column registry
    local_record: Synchronized entity tables (matters, contacts, tasks)
    sync_run: Sync run audit records
    oauth_token: Persisted OAuth tokens for the remote API

Database Schema:
    The entity tables are declared with their fixed columns only. Columns
    for custom fields are added at runtime by ingestion.schema_planner and
    are always nullable, so the ORM classes never see them; the merge
    engine works against the reflected table instead.

Usage:
    from models import FieldCatalogEntry, SyncRun, Matter
    from models.base import EntityKind, DeclaredType
"""

from models.base import Base, EntityKind, DeclaredType, SyncStatus, SyncState
from models.field_catalog import FieldCatalogEntry
from models.local_record import Matter, Contact, Task, ENTITY_MODELS
from models.sync_run import SyncRun
from models.oauth_token import OAuthToken

__all__ = [
    "Base",
    "EntityKind",
    "DeclaredType",
    "SyncStatus",
    "SyncState",
    "FieldCatalogEntry",
    "Matter",
    "Contact",
    "Task",
    "ENTITY_MODELS",
    "SyncRun",
    "OAuthToken",
]
