from datetime import datetime, timezone
from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER PRIMARY KEY columns
PrimaryKeyType = BigInteger().with_variant(Integer(), "sqlite")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class EntityKind(str, enum.Enum):
    """Remote entity kinds, one local table each"""
    MATTERS = "matters"
    CONTACTS = "contacts"
    TASKS = "tasks"


class DeclaredType(str, enum.Enum):
    """Declared value type of a custom field"""
    TEXT = "text"
    CURRENCY = "currency"
    DATE = "date"
    BOOLEAN = "boolean"
    REFERENCE = "reference"


class SyncStatus(str, enum.Enum):
    """Sync run status"""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncState(str, enum.Enum):
    """Orchestrator state machine, one per entity kind"""
    IDLE = "idle"
    FETCHING = "fetching"
    COERCING = "coercing"
    EVOLVING = "evolving"
    MERGING = "merging"
    FAILED = "failed"
