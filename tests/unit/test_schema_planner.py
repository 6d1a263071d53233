"""
Unit tests for additive schema evolution
"""

import pytest
from sqlalchemy.dialects import postgresql
from ingestion.catalog import CatalogEntry, SQL_TYPE_NAMES
from ingestion.schema_planner import (
    SchemaEvolutionPlanner,
    SchemaEvolver,
    MigrationPlan,
    MigrationStatement,
    ADD_COLUMN,
    CREATE_INDEX,
    index_name,
)
from models.base import DeclaredType, utc_now
from models.local_record import WELL_KNOWN_COLUMNS


def entry(label, declared_type, local_column, usage_count=1):
    now = utc_now()
    return CatalogEntry(
        label=label,
        declared_type=declared_type,
        local_column=local_column,
        local_sql_type=SQL_TYPE_NAMES[declared_type],
        usage_count=usage_count,
        first_seen_at=now,
        last_seen_at=now,
    )


LIVE = set(WELL_KNOWN_COLUMNS) | {"id", "local_owned_fields", "last_synced_at", "created_at", "updated_at"}


class TestPlanner:
    """Test migration planning"""

    def test_unused_field_not_materialized(self):
        planner = SchemaEvolutionPlanner(threshold=1)
        plan = planner.plan([entry("Rel Value", DeclaredType.CURRENCY, "rel_value", usage_count=0)], LIVE, "matters")
        assert plan.is_empty

    def test_used_field_gets_column(self):
        planner = SchemaEvolutionPlanner(threshold=1)
        plan = planner.plan([entry("Rel Value", DeclaredType.CURRENCY, "rel_value")], LIVE, "matters")

        assert plan.columns == ["rel_value"]
        assert plan.labels == {"Rel Value"}
        assert plan.statements[0].operation == ADD_COLUMN

    def test_reference_gets_pair_and_index(self):
        planner = SchemaEvolutionPlanner(threshold=1)
        plan = planner.plan([entry("Buyer", DeclaredType.REFERENCE, "buyer")], LIVE, "matters")

        assert plan.columns == ["buyer_ref_id", "buyer_ref_name"]
        operations = [(s.operation, s.column) for s in plan.statements]
        assert (CREATE_INDEX, "buyer_ref_id") in operations

    def test_existing_columns_give_empty_plan(self):
        planner = SchemaEvolutionPlanner(threshold=1)
        plan = planner.plan(
            [entry("Rel Value", DeclaredType.CURRENCY, "rel_value")],
            LIVE | {"rel_value"},
            "matters"
        )
        assert plan.is_empty

    def test_threshold_override(self):
        planner = SchemaEvolutionPlanner(threshold=1)
        entries = [entry("Rel Value", DeclaredType.CURRENCY, "rel_value", usage_count=3)]
        assert planner.plan(entries, LIVE, "matters", threshold=5).is_empty
        assert not planner.plan(entries, LIVE, "matters", threshold=3).is_empty

    def test_statements_are_additive_only(self):
        planner = SchemaEvolutionPlanner(threshold=1)
        plan = planner.plan(
            [
                entry("Rel Value", DeclaredType.CURRENCY, "rel_value"),
                entry("Closing Date", DeclaredType.DATE, "closing_date"),
                entry("Buyer", DeclaredType.REFERENCE, "buyer"),
            ],
            LIVE,
            "matters"
        )
        for sql in plan.render(postgresql.dialect()):
            assert "DROP" not in sql
            assert "ALTER COLUMN" not in sql
            assert sql.startswith(("ALTER TABLE", "CREATE INDEX IF NOT EXISTS"))


class TestRendering:
    """Test DDL rendering"""

    def test_postgres_add_column(self):
        statement = MigrationStatement(ADD_COLUMN, "matters", "rel_value", "Rel Value",
                                       entry("Rel Value", DeclaredType.CURRENCY, "rel_value").column_types()[0][1])
        assert statement.render(postgresql.dialect()) == (
            "ALTER TABLE matters ADD COLUMN IF NOT EXISTS rel_value NUMERIC(15, 2) NULL"
        )

    def test_reserved_word_is_quoted(self):
        statement = MigrationStatement(ADD_COLUMN, "matters", "order", "Order",
                                       entry("Order", DeclaredType.TEXT, "order").column_types()[0][1])
        assert '"order"' in statement.render(postgresql.dialect())

    def test_index_name_fits_identifier_limit(self):
        name = index_name("matters", "x" * 80)
        assert len(name) <= 63
        assert name == index_name("matters", "x" * 80)


class TestEvolver:
    """Test applying plans against the database"""

    @pytest.mark.asyncio
    async def test_apply_then_replan_is_empty(self, db_session):
        planner = SchemaEvolutionPlanner(threshold=1)
        evolver = SchemaEvolver(db_session)
        entries = [
            entry("Rel Value", DeclaredType.CURRENCY, "rel_value"),
            entry("Buyer", DeclaredType.REFERENCE, "buyer"),
        ]

        plan = planner.plan(entries, await evolver.live_columns("matters"), "matters")
        result = await evolver.apply(plan)

        assert result.errors == []
        assert set(result.applied_columns) == {"rel_value", "buyer_ref_id", "buyer_ref_name"}
        assert result.materialized_labels == {"Rel Value", "Buyer"}

        live = await evolver.live_columns("matters")
        assert {"rel_value", "buyer_ref_id", "buyer_ref_name"} <= live
        assert planner.plan(entries, live, "matters").is_empty

    @pytest.mark.asyncio
    async def test_failing_statement_does_not_stop_others(self, db_session):
        evolver = SchemaEvolver(db_session)
        text_type = entry("X", DeclaredType.TEXT, "x").column_types()[0][1]
        plan = MigrationPlan(table="matters", statements=[
            # "name" already exists, SQLite rejects the duplicate
            MigrationStatement(ADD_COLUMN, "matters", "name", "Name", text_type),
            MigrationStatement(ADD_COLUMN, "matters", "escrow_officer", "Escrow Officer", text_type),
        ])

        result = await evolver.apply(plan)

        assert len(result.errors) == 1
        assert result.errors[0].context["column"] == "name"
        assert result.applied_columns == ["escrow_officer"]
        assert result.materialized_labels == {"Escrow Officer"}
        assert "escrow_officer" in await evolver.live_columns("matters")

    @pytest.mark.asyncio
    async def test_empty_plan_is_noop(self, db_session):
        result = await SchemaEvolver(db_session).apply(MigrationPlan(table="matters"))
        assert result.applied_columns == []
        assert result.errors == []
