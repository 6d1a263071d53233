"""
Convert raw custom-field values into the storage representation of their
declared type.

Rules:
- TEXT: strings kept as-is, empty or whitespace-only strings become NULL
- CURRENCY: exact decimal, 2 fractional digits, half-up rounding
- DATE: timezone-aware UTC instant (naive input is taken as UTC)
- BOOLEAN: true / false / NULL, never defaulted
- REFERENCE: (ref_id, display_name) pair

A value that cannot be converted raises CoercionError; callers store NULL
for that field and keep the rest of the record.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Iterable, Optional
import logging

from core.exceptions import CoercionError
from ingestion.catalog import physical_columns
from models.base import DeclaredType
from schemas.remote import ReferenceValue, parse_utc_datetime

logger = logging.getLogger(__name__)

CURRENCY_QUANTUM = Decimal("0.01")

# NUMERIC(15, 2) holds at most 13 integer digits
CURRENCY_LIMIT = Decimal(10) ** 13

TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1", "on"})
FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0", "off"})


@dataclass(frozen=True)
class CoercedValue:
    """A value in its storage representation; ref_name is only set for references"""
    declared_type: DeclaredType
    value: Any = None
    ref_name: Optional[str] = None

    @property
    def is_null(self) -> bool:
        return self.value is None

    def column_values(self, local_column: str) -> Dict[str, Any]:
        """Map the value onto the entry's physical columns"""
        columns = physical_columns(local_column, self.declared_type)
        if self.declared_type == DeclaredType.REFERENCE:
            ref_id_column, ref_name_column = columns
            return {ref_id_column: self.value, ref_name_column: self.ref_name}
        return {columns[0]: self.value}


class TypeCoercionEngine:
    """
    Pure, deterministic coercion of raw values.

    Coercing the same (value, type) pair twice always yields the same result.
    """

    def __init__(self, nonnegative_labels: Optional[Iterable[str]] = None):
        self.nonnegative_labels = frozenset(nonnegative_labels or ())
        self._handlers = {
            DeclaredType.TEXT: self._to_text,
            DeclaredType.CURRENCY: self._to_currency,
            DeclaredType.DATE: self._to_date,
            DeclaredType.BOOLEAN: self._to_boolean,
            DeclaredType.REFERENCE: self._to_reference,
        }

    def coerce(
        self,
        raw_value: Any,
        declared_type: DeclaredType,
        label: Optional[str] = None
    ) -> CoercedValue:
        """
        Coerce one raw value.

        Args:
            raw_value: Value taken from the remote payload
            declared_type: Type recorded in the field catalog
            label: Field label, used for error context and currency rules

        Raises:
            CoercionError: If the value cannot be represented in the declared type
        """
        declared_type = DeclaredType(declared_type)
        try:
            return self._handlers[declared_type](raw_value, label)
        except CoercionError:
            raise
        except (ValueError, TypeError, ArithmeticError) as e:
            raise CoercionError(
                f"Cannot coerce value to {declared_type.value}",
                context={"declared_type": declared_type.value, "raw_value": repr(raw_value)[:200]},
                original_exception=e,
                field_label=label
            )

    # ------------------------------------------------------------------
    # Per-type handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_text(raw_value: Any, label: Optional[str]) -> CoercedValue:
        if raw_value is None:
            return CoercedValue(DeclaredType.TEXT)
        if isinstance(raw_value, ReferenceValue):
            raw_value = raw_value.display_name or raw_value.ref_id
        elif isinstance(raw_value, bool):
            raw_value = "true" if raw_value else "false"
        elif isinstance(raw_value, (int, float, Decimal)):
            raw_value = str(raw_value)
        elif isinstance(raw_value, datetime):
            raw_value = raw_value.isoformat()
        elif not isinstance(raw_value, str):
            raise TypeError(f"Unsupported text value of type {type(raw_value).__name__}")

        if not raw_value.strip():
            return CoercedValue(DeclaredType.TEXT)
        return CoercedValue(DeclaredType.TEXT, raw_value)

    def _to_currency(self, raw_value: Any, label: Optional[str]) -> CoercedValue:
        if raw_value is None:
            return CoercedValue(DeclaredType.CURRENCY)
        if isinstance(raw_value, bool):
            raise TypeError("Boolean is not a currency amount")

        if isinstance(raw_value, Decimal):
            amount = raw_value
        elif isinstance(raw_value, (int, float)):
            # str() keeps the shortest decimal form of a float (195816.28, not 195816.279999...)
            amount = Decimal(str(raw_value))
        elif isinstance(raw_value, str):
            text = raw_value.strip().replace("$", "").replace(",", "").replace(" ", "")
            if not text:
                return CoercedValue(DeclaredType.CURRENCY)
            try:
                amount = Decimal(text)
            except InvalidOperation:
                raise ValueError(f"Not a number: {raw_value!r}")
        else:
            raise TypeError(f"Unsupported currency value of type {type(raw_value).__name__}")

        if not amount.is_finite():
            raise ValueError(f"Non-finite currency amount: {raw_value!r}")

        amount = amount.quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)

        if abs(amount) >= CURRENCY_LIMIT:
            raise CoercionError(
                "Currency amount exceeds NUMERIC(15, 2)",
                context={"declared_type": DeclaredType.CURRENCY.value, "raw_value": repr(raw_value)[:200]},
                field_label=label
            )
        if amount < 0 and label in self.nonnegative_labels:
            raise CoercionError(
                "Negative amount for a non-negative currency field",
                context={"declared_type": DeclaredType.CURRENCY.value, "raw_value": repr(raw_value)[:200]},
                field_label=label
            )
        return CoercedValue(DeclaredType.CURRENCY, amount)

    @staticmethod
    def _to_date(raw_value: Any, label: Optional[str]) -> CoercedValue:
        if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
            return CoercedValue(DeclaredType.DATE)
        if isinstance(raw_value, date) and not isinstance(raw_value, datetime):
            return CoercedValue(
                DeclaredType.DATE,
                datetime(raw_value.year, raw_value.month, raw_value.day, tzinfo=timezone.utc)
            )
        return CoercedValue(DeclaredType.DATE, parse_utc_datetime(raw_value))

    @staticmethod
    def _to_boolean(raw_value: Any, label: Optional[str]) -> CoercedValue:
        if raw_value is None:
            return CoercedValue(DeclaredType.BOOLEAN)
        if isinstance(raw_value, bool):
            return CoercedValue(DeclaredType.BOOLEAN, raw_value)
        if isinstance(raw_value, int) and raw_value in (0, 1):
            return CoercedValue(DeclaredType.BOOLEAN, bool(raw_value))
        if isinstance(raw_value, str):
            text = raw_value.strip().lower()
            if not text:
                return CoercedValue(DeclaredType.BOOLEAN)
            if text in TRUE_STRINGS:
                return CoercedValue(DeclaredType.BOOLEAN, True)
            if text in FALSE_STRINGS:
                return CoercedValue(DeclaredType.BOOLEAN, False)
        raise ValueError(f"Not a boolean: {raw_value!r}")

    @staticmethod
    def _to_reference(raw_value: Any, label: Optional[str]) -> CoercedValue:
        if raw_value is None:
            return CoercedValue(DeclaredType.REFERENCE)
        if isinstance(raw_value, dict):
            if raw_value.get("id") is None:
                return CoercedValue(DeclaredType.REFERENCE)
            raw_value = ReferenceValue(ref_id=str(raw_value["id"]), display_name=raw_value.get("display_name"))
        if not isinstance(raw_value, ReferenceValue):
            raise TypeError(f"Unsupported reference value of type {type(raw_value).__name__}")
        ref_id = raw_value.ref_id
        if len(ref_id) > 64:
            raise ValueError("Reference id longer than 64 characters")
        return CoercedValue(DeclaredType.REFERENCE, ref_id, raw_value.display_name)
