"""
Unit tests for record normalization
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from ingestion.catalog import FieldCatalog
from ingestion.transformers.coercion import TypeCoercionEngine
from ingestion.transformers.normalizer import RecordNormalizer
from models.base import EntityKind
from schemas.remote import RemoteEntity
from tests.factories import custom_field, matter


def entity(*fields, **extra):
    return RemoteEntity.from_payload(EntityKind.MATTERS, matter("m-1", custom_fields=list(fields), **extra))


@pytest.fixture
def normalizer(db_session):
    return RecordNormalizer(FieldCatalog(db_session), TypeCoercionEngine())


class TestRecordNormalizer:
    """Test entity -> column values"""

    @pytest.mark.asyncio
    async def test_well_known_values(self, normalizer):
        record = await normalizer.normalize(entity())

        assert record.remote_id == "m-1"
        assert record.values["name"] == "Exchange"
        assert record.values["account_ref_id"] == "acct-1"
        assert record.values["remote_updated_at"] == datetime(2025, 8, 11, 15, 30, tzinfo=timezone.utc)
        assert record.values["remote_payload"]["id"] == "m-1"

    @pytest.mark.asyncio
    async def test_custom_fields_coerced(self, normalizer):
        record = await normalizer.normalize(entity(
            custom_field("Rel Value", "Currency", 212000),
            custom_field("Closing Date", "Date", "2025-09-30T00:00:00Z"),
            custom_field("Buyer", "Contact", {"id": "c-9", "display_name": "Jane Buyer"}),
        ))

        assert record.values["rel_value"] == Decimal("212000.00")
        assert record.values["closing_date"] == datetime(2025, 9, 30, tzinfo=timezone.utc)
        assert record.values["buyer_ref_id"] == "c-9"
        assert record.values["buyer_ref_name"] == "Jane Buyer"
        assert record.labels == {"Rel Value", "Closing Date", "Buyer"}
        assert record.errors == []

    @pytest.mark.asyncio
    async def test_bad_value_is_null_and_reported(self, normalizer):
        record = await normalizer.normalize(entity(
            custom_field("Rel Value", "Currency", "abc"),
            custom_field("Escrow Officer", "TextBox", "Pat"),
        ))

        assert record.values["rel_value"] is None
        assert record.values["escrow_officer"] == "Pat"
        assert len(record.errors) == 1
        error = record.errors[0]
        assert error.field_label == "Rel Value"
        assert error.remote_id == "m-1"
        assert error.error_type == "CoercionError"

    @pytest.mark.asyncio
    async def test_empty_value_counts_no_usage(self, normalizer):
        record = await normalizer.normalize(entity(custom_field("Escrow Officer", "TextBox", "")))
        await normalizer.catalog.flush_usage()

        assert record.values["escrow_officer"] is None
        assert normalizer.catalog.get("Escrow Officer").usage_count == 0

    @pytest.mark.asyncio
    async def test_catalog_type_wins_over_payload_type(self, normalizer):
        await normalizer.normalize(entity(custom_field("Rel Value", "Currency", 100)))
        record = await normalizer.normalize(entity(custom_field("Rel Value", "TextBox", "150.50")))

        assert record.values["rel_value"] == Decimal("150.50")
        assert normalizer.catalog.type_conflicts == 1

    @pytest.mark.asyncio
    async def test_absent_field_not_in_values(self, normalizer):
        await normalizer.normalize(entity(custom_field("Rel Value", "Currency", 100)))
        record = await normalizer.normalize(entity())

        assert "rel_value" not in record.values
