"""
Additive schema evolution for the entity tables.

The planner compares catalog entries against the live columns of a table and
emits the ALTER TABLE / CREATE INDEX statements needed to materialize the
fields in use. It never drops, retypes or tightens a column: every statement
is ADD COLUMN ... NULL or CREATE INDEX IF NOT EXISTS.

The evolver applies a plan, inside one transaction where the dialect supports
transactional DDL, otherwise (or when that transaction fails) one statement at
a time, reporting each failing statement without stopping the others.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from sqlalchemy import inspect, text
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import TypeEngine

from core.config import settings
from core.exceptions import MigrationStatementError
from ingestion.catalog import CatalogEntry, REFERENCE_ID_SUFFIX

logger = logging.getLogger(__name__)

ADD_COLUMN = "add_column"
CREATE_INDEX = "create_index"

# Dialects whose DDL runs inside a transaction and can be rolled back
TRANSACTIONAL_DDL_DIALECTS = frozenset({"postgresql"})

# Dialects accepting ALTER TABLE ... ADD COLUMN IF NOT EXISTS
ADD_COLUMN_IF_NOT_EXISTS_DIALECTS = frozenset({"postgresql"})


def index_name(table: str, column: str, max_length: int = 63) -> str:
    name = f"ix_{table}_{column}"
    if len(name) <= max_length:
        return name
    digest = hashlib.md5(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[:max_length - 9]}_{digest}"


@dataclass(frozen=True)
class MigrationStatement:
    """One additive DDL statement"""
    operation: str
    table: str
    column: str
    label: str
    sql_type: Optional[TypeEngine] = None

    def render(self, dialect: Dialect) -> str:
        preparer = dialect.identifier_preparer
        table = preparer.quote(self.table)
        column = preparer.quote(self.column)

        if self.operation == ADD_COLUMN:
            if_not_exists = " IF NOT EXISTS" if dialect.name in ADD_COLUMN_IF_NOT_EXISTS_DIALECTS else ""
            column_type = self.sql_type.compile(dialect=dialect)
            return f"ALTER TABLE {table} ADD COLUMN{if_not_exists} {column} {column_type} NULL"

        index = preparer.quote(index_name(self.table, self.column))
        return f"CREATE INDEX IF NOT EXISTS {index} ON {table} ({column})"


@dataclass
class MigrationPlan:
    """Ordered additive statements for one table"""
    table: str
    statements: List[MigrationStatement] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.statements

    @property
    def columns(self) -> List[str]:
        return [s.column for s in self.statements if s.operation == ADD_COLUMN]

    @property
    def labels(self) -> Set[str]:
        return {s.label for s in self.statements if s.operation == ADD_COLUMN}

    def render(self, dialect: Dialect) -> List[str]:
        return [s.render(dialect) for s in self.statements]


@dataclass
class EvolutionResult:
    """Outcome of applying a MigrationPlan"""
    applied_columns: List[str] = field(default_factory=list)
    materialized_labels: Set[str] = field(default_factory=set)
    errors: List[MigrationStatementError] = field(default_factory=list)


class SchemaEvolutionPlanner:
    """
    Decide which catalog entries get physical columns.

    An entry is materialized once its usage_count reaches the threshold.
    Planning against an already-evolved schema returns an empty plan.
    """

    def __init__(self, threshold: Optional[int] = None):
        self.threshold = settings.FIELD_MATERIALIZATION_THRESHOLD if threshold is None else threshold

    def plan(
        self,
        catalog_entries: Iterable[CatalogEntry],
        live_columns: Iterable[str],
        table: str,
        threshold: Optional[int] = None
    ) -> MigrationPlan:
        threshold = self.threshold if threshold is None else threshold
        live = set(live_columns)
        plan = MigrationPlan(table=table)

        for entry in sorted(catalog_entries, key=lambda e: e.label):
            if entry.usage_count < threshold:
                continue
            for column, sql_type in entry.column_types():
                if column in live:
                    continue
                live.add(column)
                plan.statements.append(MigrationStatement(ADD_COLUMN, table, column, entry.label, sql_type))
                if column.endswith(REFERENCE_ID_SUFFIX):
                    plan.statements.append(MigrationStatement(CREATE_INDEX, table, column, entry.label))

        if not plan.is_empty:
            logger.info(f"Planned {len(plan.columns)} new column(s) on {table}: {', '.join(plan.columns)}")
        return plan


class SchemaEvolver:
    """Apply migration plans and inspect live table columns"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    @property
    def dialect(self) -> Dialect:
        return self.db.bind.dialect

    async def live_columns(self, table: str) -> Set[str]:
        def _inspect(sync_session) -> Set[str]:
            return {c["name"] for c in inspect(sync_session.connection()).get_columns(table)}

        return await self.db.run_sync(_inspect)

    async def apply(self, plan: MigrationPlan) -> EvolutionResult:
        if plan.is_empty:
            return EvolutionResult()

        if self.dialect.name in TRANSACTIONAL_DDL_DIALECTS:
            try:
                for statement in plan.statements:
                    await self.db.execute(text(statement.render(self.dialect)))
                await self.db.commit()
                logger.info(f"Applied migration on {plan.table}: {len(plan.statements)} statement(s)")
                return EvolutionResult(applied_columns=plan.columns, materialized_labels=plan.labels)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.warning(
                    f"Transactional migration on {plan.table} failed, "
                    f"applying statements one at a time: {e}"
                )

        return await self._apply_individually(plan)

    async def _apply_individually(self, plan: MigrationPlan) -> EvolutionResult:
        result = EvolutionResult()
        failed_columns: Set[str] = set()

        for statement in plan.statements:
            if statement.operation == CREATE_INDEX and statement.column in failed_columns:
                continue

            sql = statement.render(self.dialect)
            try:
                await self.db.execute(text(sql))
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                failed_columns.add(statement.column)
                error = MigrationStatementError(
                    "Migration statement failed",
                    context={"table_name": plan.table, "column": statement.column,
                             "field_label": statement.label, "statement": sql},
                    original_exception=e
                )
                logger.error(f"{error}", extra={"error_context": error.to_dict()})
                result.errors.append(error)
                continue

            if statement.operation == ADD_COLUMN:
                result.applied_columns.append(statement.column)

        failed_labels = {s.label for s in plan.statements if s.column in failed_columns}
        result.materialized_labels = plan.labels - failed_labels
        logger.info(
            f"Applied {len(result.applied_columns)} column(s) on {plan.table}, "
            f"{len(result.errors)} statement(s) failed"
        )
        return result
