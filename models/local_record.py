from sqlalchemy import Column, String, Text, DateTime
from models.base import Base, EntityKind, JSONType, PrimaryKeyType, utc_now


class LocalRecordMixin:
    """
    Fixed columns shared by every synchronized entity table.

    Custom-field columns are not declared here: they are added at runtime by
    the schema evolution planner, always nullable.

    Ownership:
    - remote_id ... remote_payload are remote-sourced and overwritten on sync
    - local_owned_fields lists columns edited by a human; sync never touches them
    - last_synced_at is the last time remote data changed the row
    """

    id = Column(PrimaryKeyType, primary_key=True, autoincrement=True)

    # Remote identity (NULL only for locally created records)
    remote_id = Column(String(64), nullable=True, unique=True, index=True)

    # Well-known remote attributes
    name = Column(String(500), nullable=True)
    status = Column(String(100), nullable=True)
    account_ref_id = Column(String(64), nullable=True, index=True)
    account_ref_name = Column(Text, nullable=True)
    remote_created_at = Column(DateTime(timezone=True), nullable=True)
    remote_updated_at = Column(DateTime(timezone=True), nullable=True)

    # Last raw payload, keeps not-yet-materialized fields
    remote_payload = Column(JSONType, nullable=True)

    # Sync bookkeeping
    local_owned_fields = Column(JSONType, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class Matter(LocalRecordMixin, Base):
    """Exchange case, synchronized from remote matters"""
    __tablename__ = "matters"


class Contact(LocalRecordMixin, Base):
    """Client, buyer, seller or agent, synchronized from remote contacts"""
    __tablename__ = "contacts"


class Task(LocalRecordMixin, Base):
    """Case task, synchronized from remote tasks"""
    __tablename__ = "tasks"


ENTITY_MODELS = {
    EntityKind.MATTERS: Matter,
    EntityKind.CONTACTS: Contact,
    EntityKind.TASKS: Task,
}

# Remote-sourced fixed columns, in write order
WELL_KNOWN_COLUMNS = (
    "remote_id",
    "name",
    "status",
    "account_ref_id",
    "account_ref_name",
    "remote_created_at",
    "remote_updated_at",
    "remote_payload",
)

# Every fixed column; custom field columns must not reuse these names
RESERVED_COLUMNS = frozenset(
    column.name for column in Matter.__table__.columns
)


def table_name_for(entity_kind: EntityKind) -> str:
    return ENTITY_MODELS[EntityKind(entity_kind)].__tablename__
