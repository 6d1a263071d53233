"""
Field catalog: registry of remote custom-field labels and their local columns.

The catalog is bootstrapped from the field_catalog table and kept in memory
for the lifetime of a sync pass. New labels are written immediately with an
atomic insert-if-absent; usage counters are buffered per page and written
with atomic increments, so several pipelines can share the table safely.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import TypeEngine, Text, Numeric, DateTime, Boolean, String

from core.config import settings
from core.database import insert_for
from core.exceptions import CatalogError, CatalogCorruptionError
from models.base import DeclaredType, utc_now
from models.field_catalog import FieldCatalogEntry
from models.local_record import RESERVED_COLUMNS
from schemas.sync import CatalogStats, FieldCatalogEntryInfo

logger = logging.getLogger(__name__)

REFERENCE_ID_SUFFIX = "_ref_id"
REFERENCE_NAME_SUFFIX = "_ref_name"

# Room kept free at the end of every base name for the reference suffixes
_SUFFIX_RESERVE = len(REFERENCE_NAME_SUFFIX)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# Canonical (PostgreSQL) SQL type recorded in the catalog
SQL_TYPE_NAMES = {
    DeclaredType.TEXT: "TEXT",
    DeclaredType.CURRENCY: "NUMERIC(15, 2)",
    DeclaredType.DATE: "TIMESTAMP WITH TIME ZONE",
    DeclaredType.BOOLEAN: "BOOLEAN",
    DeclaredType.REFERENCE: "VARCHAR(64)",
}

MAX_NAME_ATTEMPTS = 100


def derive_column_name(label: str, max_length: int = 63) -> str:
    """
    Derive the base column name for a label.

    Pure function of the label: lower-cased, runs of non-alphanumeric
    characters collapsed to "_", truncated so that the longest companion
    suffix still fits in the identifier limit.
    """
    name = _NON_ALNUM.sub("_", label.lower()).strip("_")
    if not name:
        name = "field"
    if name[0].isdigit():
        name = f"f_{name}"
    return name[:max_length - _SUFFIX_RESERVE].rstrip("_")


def candidate_column_name(label: str, attempt: int, max_length: int = 63) -> str:
    """Column name for the n-th naming attempt; attempt 1 is the plain base name"""
    base = derive_column_name(label, max_length)
    if attempt <= 1:
        return base
    suffix = f"_{attempt}"
    limit = max_length - _SUFFIX_RESERVE - len(suffix)
    return f"{base[:limit].rstrip('_')}{suffix}"


def physical_columns(local_column: str, declared_type: DeclaredType) -> Tuple[str, ...]:
    """Columns a catalog entry occupies on an entity table"""
    if DeclaredType(declared_type) == DeclaredType.REFERENCE:
        return (f"{local_column}{REFERENCE_ID_SUFFIX}", f"{local_column}{REFERENCE_NAME_SUFFIX}")
    return (local_column,)


def column_types(local_column: str, declared_type: DeclaredType) -> List[Tuple[str, TypeEngine]]:
    """Physical columns with the SQLAlchemy type used to render their DDL"""
    declared_type = DeclaredType(declared_type)
    if declared_type == DeclaredType.REFERENCE:
        ref_id, ref_name = physical_columns(local_column, declared_type)
        return [(ref_id, String(64)), (ref_name, Text())]
    sql_type = {
        DeclaredType.TEXT: Text(),
        DeclaredType.CURRENCY: Numeric(15, 2),
        DeclaredType.DATE: DateTime(timezone=True),
        DeclaredType.BOOLEAN: Boolean(),
    }[declared_type]
    return [(local_column, sql_type)]


@dataclass
class CatalogEntry:
    """In-memory snapshot of a field_catalog row"""
    label: str
    declared_type: DeclaredType
    local_column: str
    local_sql_type: str
    usage_count: int
    first_seen_at: datetime
    last_seen_at: datetime

    @property
    def physical_columns(self) -> Tuple[str, ...]:
        return physical_columns(self.local_column, self.declared_type)

    def column_types(self) -> List[Tuple[str, TypeEngine]]:
        return column_types(self.local_column, self.declared_type)

    @classmethod
    def from_row(cls, row: FieldCatalogEntry) -> "CatalogEntry":
        return cls(
            label=row.label,
            declared_type=DeclaredType(row.declared_type),
            local_column=row.local_column,
            local_sql_type=row.local_sql_type,
            usage_count=row.usage_count or 0,
            first_seen_at=row.first_seen_at,
            last_seen_at=row.last_seen_at,
        )


class FieldCatalog:
    """
    Label -> column registry shared by all entity kinds.

    Guarantees:
    - A label keeps the column (and declared type) it was first stored with
    - No two labels share a physical column, nor reuse a fixed column name
    - usage_count only counts non-empty observations
    """

    def __init__(
        self,
        db_session: AsyncSession,
        max_identifier_length: Optional[int] = None,
        reserved_columns=RESERVED_COLUMNS
    ):
        self.db = db_session
        self.max_identifier_length = max_identifier_length or settings.IDENTIFIER_MAX_LENGTH
        self.reserved_columns = frozenset(reserved_columns)

        self._entries: Dict[str, CatalogEntry] = {}
        self._column_owners: Dict[str, str] = {}
        self._pending_usage: Dict[str, Tuple[int, datetime]] = {}
        self._loaded = False

        self.new_labels: List[str] = []
        self.type_conflicts = 0

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """
        Bootstrap the catalog from the field_catalog table.

        Raises:
            CatalogError: If the catalog table cannot be read
            CatalogCorruptionError: If two labels claim the same column
        """
        try:
            result = await self.db.execute(
                select(FieldCatalogEntry).execution_options(populate_existing=True)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise CatalogError(
                "Field catalog store unavailable",
                context={"operation": "SELECT", "table_name": "field_catalog"},
                original_exception=e
            )

        entries: Dict[str, CatalogEntry] = {}
        owners: Dict[str, str] = {}
        for row in rows:
            entry = CatalogEntry.from_row(row)
            self._claim(owners, entry)
            entries[entry.label] = entry

        self._entries = entries
        self._column_owners = owners
        self._loaded = True
        logger.info(f"Field catalog loaded with {len(entries)} entries")

    async def ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    @staticmethod
    def _claim(owners: Dict[str, str], entry: CatalogEntry) -> None:
        for column in {entry.local_column, *entry.physical_columns}:
            owner = owners.get(column)
            if owner is not None and owner != entry.label:
                raise CatalogCorruptionError(
                    "Two catalog labels map to the same column",
                    context={"local_column": column, "labels": [owner, entry.label]}
                )
            owners[column] = entry.label

    # ------------------------------------------------------------------
    # Lookup / registration
    # ------------------------------------------------------------------

    def get(self, label: str) -> Optional[CatalogEntry]:
        return self._entries.get(label)

    def entries(self) -> List[CatalogEntry]:
        return list(self._entries.values())

    async def resolve(self, label: str, declared_type: DeclaredType) -> CatalogEntry:
        """
        Look up a label, registering it on first encounter.

        A label seen again with another declared type keeps its original
        type; the conflict is logged and counted, never applied.
        """
        await self.ensure_loaded()
        declared_type = DeclaredType(declared_type)

        entry = self._entries.get(label)
        if entry is None:
            entry = await self._register(label, declared_type)

        if entry.declared_type != declared_type:
            self.type_conflicts += 1
            logger.warning(
                f"Type conflict for custom field {label!r}: catalog has "
                f"{entry.declared_type.value}, remote sent {declared_type.value}; keeping "
                f"{entry.declared_type.value}"
            )
        return entry

    def _is_free(self, label: str, declared_type: DeclaredType, column: str) -> bool:
        for name in {column, *physical_columns(column, declared_type)}:
            if name in self.reserved_columns:
                return False
            owner = self._column_owners.get(name)
            if owner is not None and owner != label:
                return False
        return True

    async def _register(self, label: str, declared_type: DeclaredType) -> CatalogEntry:
        for attempt in range(1, MAX_NAME_ATTEMPTS + 1):
            column = candidate_column_name(label, attempt, self.max_identifier_length)
            if not self._is_free(label, declared_type, column):
                continue

            now = utc_now()
            try:
                stmt = insert_for(self.db, FieldCatalogEntry.__table__).values(
                    label=label,
                    declared_type=declared_type,
                    local_column=column,
                    local_sql_type=SQL_TYPE_NAMES[declared_type],
                    usage_count=0,
                    first_seen_at=now,
                    last_seen_at=now,
                ).on_conflict_do_nothing()
                inserted = (await self.db.execute(stmt)).rowcount == 1
                await self.db.commit()

                result = await self.db.execute(
                    select(FieldCatalogEntry)
                    .where(FieldCatalogEntry.label == label)
                    .execution_options(populate_existing=True)
                )
                row = result.scalar_one_or_none()
                stored = CatalogEntry.from_row(row) if row is not None else None

                if stored is None:
                    # Column taken by a label registered elsewhere since load()
                    owner = await self.db.execute(
                        select(FieldCatalogEntry).where(FieldCatalogEntry.local_column == column)
                    )
                    owner_row = owner.scalar_one_or_none()
                    if owner_row is not None:
                        self._remember(CatalogEntry.from_row(owner_row))
                    else:
                        self._column_owners[column] = "<unknown>"
                    continue
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise CatalogError(
                    "Failed to register custom field label",
                    context={"field_label": label, "operation": "INSERT", "table_name": "field_catalog"},
                    original_exception=e
                )

            self._remember(stored)
            if inserted:
                self.new_labels.append(label)
                logger.info(
                    f"Registered custom field {label!r} as column {stored.local_column!r} "
                    f"({stored.declared_type.value})"
                )
            return stored

        raise CatalogError(
            "Could not find a free column name for custom field",
            context={"field_label": label, "attempts": MAX_NAME_ATTEMPTS}
        )

    def _remember(self, entry: CatalogEntry) -> None:
        self._claim(self._column_owners, entry)
        self._entries[entry.label] = entry

    # ------------------------------------------------------------------
    # Usage statistics
    # ------------------------------------------------------------------

    def record_usage(self, entry: CatalogEntry, had_non_empty_value: bool) -> None:
        """
        Buffer one observation of a field.

        usage_count only moves for non-empty values; last_seen_at always moves.
        Written by flush_usage().
        """
        now = utc_now()
        increment = 1 if had_non_empty_value else 0
        pending, _ = self._pending_usage.get(entry.label, (0, now))
        self._pending_usage[entry.label] = (pending + increment, now)

        entry.usage_count += increment
        entry.last_seen_at = now

    async def flush_usage(self) -> None:
        """
        Write buffered usage with one atomic increment per label.

        Raises:
            CatalogError: If the catalog table cannot be updated
        """
        if not self._pending_usage:
            return

        pending, self._pending_usage = self._pending_usage, {}
        try:
            for label, (increment, seen_at) in pending.items():
                result = await self.db.execute(
                    update(FieldCatalogEntry)
                    .where(FieldCatalogEntry.label == label)
                    .values(
                        usage_count=FieldCatalogEntry.usage_count + increment,
                        last_seen_at=seen_at,
                    )
                    .returning(FieldCatalogEntry.usage_count)
                )
                stored_count = result.scalar_one_or_none()
                entry = self._entries.get(label)
                if entry is not None and stored_count is not None:
                    entry.usage_count = stored_count
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CatalogError(
                "Failed to record custom field usage",
                context={"operation": "UPDATE", "table_name": "field_catalog", "labels": len(pending)},
                original_exception=e
            )

        logger.debug(f"Flushed usage for {len(pending)} custom fields")

    async def usage_stats(self, top: int = 10) -> CatalogStats:
        """Aggregate usage statistics straight from the catalog table"""
        total = (await self.db.execute(select(func.count()).select_from(FieldCatalogEntry))).scalar() or 0

        by_type_rows = await self.db.execute(
            select(FieldCatalogEntry.declared_type, func.count()).group_by(FieldCatalogEntry.declared_type)
        )
        fields_by_type = {
            DeclaredType(declared_type).value: count for declared_type, count in by_type_rows.all()
        }

        never_populated = (await self.db.execute(
            select(func.count()).select_from(FieldCatalogEntry).where(FieldCatalogEntry.usage_count == 0)
        )).scalar() or 0

        most_used = await self.db.execute(
            select(FieldCatalogEntry)
            .order_by(FieldCatalogEntry.usage_count.desc(), FieldCatalogEntry.label)
            .limit(top)
            .execution_options(populate_existing=True)
        )

        return CatalogStats(
            total_fields=total,
            fields_by_type=fields_by_type,
            never_populated=never_populated,
            most_used=[FieldCatalogEntryInfo.model_validate(row) for row in most_used.scalars().all()],
        )
