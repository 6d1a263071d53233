"""
Turn a RemoteEntity into column values for its local table
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Set
import logging

from core.exceptions import CoercionError
from ingestion.catalog import FieldCatalog
from ingestion.transformers.coercion import TypeCoercionEngine
from schemas.remote import RemoteEntity
from schemas.sync import RecordError

logger = logging.getLogger(__name__)


@dataclass
class NormalizedRecord:
    """
    Coerced values of one remote record, keyed by local column.

    values holds the well-known columns plus every custom-field column the
    record carried (NULL for empty or uncoercible values). Custom fields
    absent from the payload are absent here too, so their columns are left
    untouched on merge.
    """
    remote: RemoteEntity
    values: Dict[str, Any] = field(default_factory=dict)
    field_columns: Dict[str, str] = field(default_factory=dict)  # column -> label
    errors: List[RecordError] = field(default_factory=list)

    @property
    def remote_id(self) -> str:
        return self.remote.remote_id

    @property
    def labels(self) -> Set[str]:
        return set(self.field_columns.values())


class RecordNormalizer:
    """
    Normalize remote entities against the field catalog.

    Handles:
    - Label resolution (registering new labels)
    - Usage bookkeeping
    - Per-field coercion with error isolation
    """

    def __init__(self, catalog: FieldCatalog, coercion: TypeCoercionEngine):
        self.catalog = catalog
        self.coercion = coercion

    async def normalize(self, entity: RemoteEntity) -> NormalizedRecord:
        """
        Normalize one entity.

        A field that fails coercion is stored as NULL and reported in
        record.errors; it never fails the record.
        """
        record = NormalizedRecord(remote=entity, values=entity.well_known_values())

        for custom_field in entity.custom_fields:
            entry = await self.catalog.resolve(custom_field.label, custom_field.declared_type)
            self.catalog.record_usage(entry, had_non_empty_value=not custom_field.is_empty)

            for column in entry.physical_columns:
                record.field_columns[column] = entry.label

            try:
                coerced = self.coercion.coerce(custom_field.raw_value, entry.declared_type, entry.label)
                record.values.update(coerced.column_values(entry.local_column))
            except CoercionError as e:
                logger.warning(f"Coercion failed for {entity.remote_id} field {entry.label!r}: {e.message}")
                for column in entry.physical_columns:
                    record.values[column] = None
                record.errors.append(RecordError.from_exception(
                    e,
                    remote_id=entity.remote_id,
                    field_label=entry.label,
                    column=entry.local_column,
                ))

        return record
