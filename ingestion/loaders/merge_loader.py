"""
Merge normalized records into their entity table with upsert logic (idempotency)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set
import logging

from sqlalchemy import MetaData, Table, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import insert_for
from core.exceptions import MergeError
from ingestion.catalog import REFERENCE_ID_SUFFIX, REFERENCE_NAME_SUFFIX
from ingestion.transformers.normalizer import NormalizedRecord
from models.base import utc_now
from schemas.remote import ensure_utc
from schemas.sync import RecordError

logger = logging.getLogger(__name__)

# Columns managed by the merge engine itself, never remote-sourced
BOOKKEEPING_COLUMNS = frozenset({
    "id", "remote_id", "local_owned_fields", "last_synced_at", "created_at", "updated_at"
})


def with_reference_companions(columns: Iterable[str], available: Iterable[str]) -> Set[str]:
    """Add the other half of every reference pair (x_ref_id, x_ref_name) present in available"""
    available = set(available)
    expanded = set(columns)
    for column in list(expanded):
        for suffix, companion in (
            (REFERENCE_ID_SUFFIX, REFERENCE_NAME_SUFFIX),
            (REFERENCE_NAME_SUFFIX, REFERENCE_ID_SUFFIX),
        ):
            if column.endswith(suffix):
                other = column[: -len(suffix)] + companion
                if other in available:
                    expanded.add(other)
    return expanded


def values_equal(stored: Any, incoming: Any) -> bool:
    """
    Compare a stored value with an incoming one.

    Datetimes compare as UTC instants (SQLite hands back naive values) and
    numbers compare as decimals.
    """
    if stored is None or incoming is None:
        return stored is None and incoming is None
    if isinstance(stored, datetime) and isinstance(incoming, datetime):
        return ensure_utc(stored) == ensure_utc(incoming)
    if (
        isinstance(incoming, Decimal)
        and isinstance(stored, (int, float, Decimal))
        and not isinstance(stored, bool)
    ):
        return Decimal(str(stored)) == incoming
    return stored == incoming


@dataclass
class MergeResult:
    """Values to write for one record and what changed"""
    values: Dict[str, Any]
    changed_columns: List[str] = field(default_factory=list)
    created: bool = False

    @property
    def changed(self) -> bool:
        return self.created or bool(self.changed_columns)


def merge(
    record: NormalizedRecord,
    existing: Optional[Mapping[str, Any]],
    now: datetime,
    writable_columns: Optional[Set[str]] = None
) -> MergeResult:
    """
    Pure merge of a normalized record onto the stored row.

    - No stored row: every coerced value, last_synced_at = now
    - Stored row: every remote-sourced column not listed in local_owned_fields
      takes the incoming value (NULL included); local-owned columns are left out
    - last_synced_at only moves when something changed

    Columns missing from writable_columns (not yet materialized) are dropped;
    their values survive in remote_payload.
    """
    incoming = {
        column: value for column, value in record.values.items()
        if column not in BOOKKEEPING_COLUMNS and (writable_columns is None or column in writable_columns)
    }

    if existing is None:
        values = dict(incoming)
        values["last_synced_at"] = now
        return MergeResult(values=values, changed_columns=sorted(incoming), created=True)

    owned = set(existing.get("local_owned_fields") or [])
    values: Dict[str, Any] = {}
    changed: List[str] = []

    for column, value in incoming.items():
        if column in owned:
            continue
        values[column] = value
        if not values_equal(existing.get(column), value):
            changed.append(column)

    if changed:
        values["last_synced_at"] = now

    return MergeResult(values=values, changed_columns=changed)


@dataclass
class LoadResult:
    """Per-page merge statistics"""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[RecordError] = field(default_factory=list)

    @property
    def upserted(self) -> int:
        return self.created + self.updated


class MergeLoader:
    """
    Upsert normalized records into one entity table.

    Ensures:
    - No duplicate rows on repeated runs (unique remote_id, ON CONFLICT upsert)
    - Identical data is not rewritten, so re-runs leave rows byte-identical
    - Local-owned columns are never part of the update set
    - Each record is its own transaction; one failure never affects another
    """

    def __init__(self, db_session: AsyncSession, table_name: str):
        self.db = db_session
        self.table_name = table_name
        self._table: Optional[Table] = None

    async def get_table(self) -> Table:
        """Reflected table, including runtime-added custom field columns"""
        if self._table is None:
            def _reflect(sync_session) -> Table:
                return Table(self.table_name, MetaData(), autoload_with=sync_session.connection())

            self._table = await self.db.run_sync(_reflect)
        return self._table

    def invalidate(self) -> None:
        """Drop the reflected table after the schema evolved"""
        self._table = None

    async def upsert(self, record: NormalizedRecord, now: Optional[datetime] = None) -> MergeResult:
        """
        Merge one record inside its own transaction.

        Raises:
            MergeError: If the row cannot be read or written
        """
        now = now or utc_now()
        table = await self.get_table()

        try:
            existing_row = await self.db.execute(
                select(table).where(table.c.remote_id == record.remote_id).with_for_update()
            )
            existing = existing_row.mappings().first()

            result = merge(record, existing, now, writable_columns=set(table.c.keys()))

            if result.changed:
                row = dict(result.values)
                row["remote_id"] = record.remote_id
                row["updated_at"] = now
                if existing is None:
                    row["created_at"] = now
                    row["local_owned_fields"] = []

                stmt = insert_for(self.db, table).values(**row)
                update_columns = [c for c in row if c not in ("remote_id", "created_at", "local_owned_fields")]
                stmt = stmt.on_conflict_do_update(
                    index_elements=["remote_id"],
                    set_={column: stmt.excluded[column] for column in update_columns}
                )
                await self.db.execute(stmt)

            await self.db.commit()
            return result

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise MergeError(
                "Failed to upsert record",
                context={"remote_id": record.remote_id, "table_name": self.table_name, "operation": "UPSERT"},
                original_exception=e
            )

    async def load(self, records: Iterable[NormalizedRecord]) -> LoadResult:
        """Upsert a page of records, isolating failures per record"""
        stats = LoadResult()

        for record in records:
            try:
                result = await self.upsert(record)
            except MergeError as e:
                logger.error(
                    f"Merge failed for {self.table_name}/{record.remote_id}: {e}",
                    extra={"error_context": e.to_dict()}
                )
                stats.failed += 1
                stats.errors.append(RecordError.from_exception(e, remote_id=record.remote_id))
                continue

            if result.created:
                stats.created += 1
            elif result.changed:
                stats.updated += 1
            else:
                stats.unchanged += 1

        logger.info(
            f"Merged into {self.table_name}: {stats.created} created, {stats.updated} updated, "
            f"{stats.unchanged} unchanged, {stats.failed} failed"
        )
        return stats

    async def apply_local_edit(self, record_id: int, values: Dict[str, Any]) -> None:
        """
        Write a human edit and flag the columns as local-owned in one statement.

        Subsequent syncs never overwrite flagged columns. Editing one half
        of a reference pair flags both halves.

        Raises:
            ValueError: If a column is unknown or managed by the sync itself
            LookupError: If the record does not exist
        """
        table = await self.get_table()
        unknown = [c for c in values if c not in table.c or c in BOOKKEEPING_COLUMNS]
        if unknown:
            raise ValueError(f"Columns cannot be edited locally: {', '.join(sorted(unknown))}")

        try:
            current = await self.db.execute(
                select(table.c.local_owned_fields).where(table.c.id == record_id).with_for_update()
            )
            row = current.first()
            if row is None:
                await self.db.rollback()
                raise LookupError(f"No {self.table_name} record with id {record_id}")

            owned = sorted(set(row[0] or []) | with_reference_companions(values, table.c.keys()))
            await self.db.execute(
                update(table)
                .where(table.c.id == record_id)
                .values(**values, local_owned_fields=owned, updated_at=utc_now())
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(f"Local edit on {self.table_name}/{record_id}: {', '.join(sorted(values))}")
