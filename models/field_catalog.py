from sqlalchemy import Column, String, Integer, Enum, DateTime
from models.base import Base, DeclaredType, utc_now


class FieldCatalogEntry(Base):
    """
    Registry of remote custom-field labels and the local columns they map to.

    Design:
    - One row per label, shared by every entity kind
    - local_column is derived from the label once and never changes
    - Rows are inserted and updated, never deleted
    - usage_count only counts non-empty observations
    """
    __tablename__ = "field_catalog"

    label = Column(String(255), primary_key=True)
    declared_type = Column(Enum(DeclaredType), nullable=False)

    local_column = Column(String(63), nullable=False, unique=True)
    local_sql_type = Column(String(64), nullable=False)

    usage_count = Column(Integer, nullable=False, default=0)

    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"<FieldCatalogEntry label={self.label!r} column={self.local_column!r} "
            f"type={self.declared_type} usage={self.usage_count}>"
        )
