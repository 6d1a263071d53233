"""
Pydantic schemas for records fetched from the remote practice-management API
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, Tuple
from datetime import datetime, timezone
from models.base import EntityKind, DeclaredType
from core.exceptions import RecordParseError
import logging

logger = logging.getLogger(__name__)


# Remote "value_type" -> declared type
VALUE_TYPE_MAP = {
    "textbox": DeclaredType.TEXT,
    "texteditor": DeclaredType.TEXT,
    "textarea": DeclaredType.TEXT,
    "dropdownlist": DeclaredType.TEXT,
    "text": DeclaredType.TEXT,
    "email": DeclaredType.TEXT,
    "url": DeclaredType.TEXT,
    "phone": DeclaredType.TEXT,
    "currency": DeclaredType.CURRENCY,
    "number": DeclaredType.CURRENCY,
    "decimal": DeclaredType.CURRENCY,
    "date": DeclaredType.DATE,
    "datetime": DeclaredType.DATE,
    "checkbox": DeclaredType.BOOLEAN,
    "boolean": DeclaredType.BOOLEAN,
    "yesno": DeclaredType.BOOLEAN,
    "contact": DeclaredType.REFERENCE,
    "matter": DeclaredType.REFERENCE,
    "reference": DeclaredType.REFERENCE,
}

# The single payload key read for each declared type
VALUE_VARIANT_KEYS = {
    DeclaredType.TEXT: "value_string",
    DeclaredType.CURRENCY: "value_number",
    DeclaredType.DATE: "value_date_time",
    DeclaredType.BOOLEAN: "value_boolean",
    DeclaredType.REFERENCE: "contact_ref",
}

# Payload keys tried, in order, for each entity's display name
NAME_KEYS = {
    EntityKind.MATTERS: ("display_name", "name"),
    EntityKind.CONTACTS: ("display_name", "name"),
    EntityKind.TASKS: ("subject", "name"),
}


def declared_type_for(value_type: Optional[str]) -> DeclaredType:
    """Map a remote value_type to a declared type; unknown types are text"""
    if not value_type:
        return DeclaredType.TEXT
    return VALUE_TYPE_MAP.get(value_type.replace("_", "").lower(), DeclaredType.TEXT)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_utc_datetime(value: Any) -> datetime:
    """
    Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a recognizable date/time
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported date value: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


class ReferenceValue(BaseModel):
    """Reference to another remote entity plus its display label"""
    ref_id: str
    display_name: Optional[str] = None

    class Config:
        frozen = True


class CustomFieldValue(BaseModel):
    """
    One label-keyed custom field of a remote entity.

    raw_value holds exactly the variant that matches declared_type:
    str (TEXT), number or numeric string (CURRENCY), ISO string (DATE),
    bool (BOOLEAN) or ReferenceValue (REFERENCE). None means the field was
    present but empty.
    """
    label: str = Field(..., min_length=1)
    declared_type: DeclaredType
    raw_value: Any = None
    remote_value_type: Optional[str] = None

    class Config:
        frozen = True

    @property
    def is_empty(self) -> bool:
        if self.raw_value is None:
            return True
        if isinstance(self.raw_value, str):
            return not self.raw_value.strip()
        return False

    @classmethod
    def from_payload(cls, item: Dict[str, Any]) -> "CustomFieldValue":
        """Build from a remote custom_field_values[] entry"""
        field_ref = item.get("custom_field_ref") or {}
        label = field_ref.get("label")
        if not label or not str(label).strip():
            raise ValueError("custom field entry without a label")

        value_type = field_ref.get("value_type")
        declared_type = declared_type_for(value_type)
        raw_value = item.get(VALUE_VARIANT_KEYS[declared_type])

        if declared_type == DeclaredType.REFERENCE:
            if isinstance(raw_value, dict) and raw_value.get("id") is not None:
                raw_value = ReferenceValue(
                    ref_id=str(raw_value["id"]),
                    display_name=raw_value.get("display_name"),
                )
            else:
                raw_value = None

        return cls(
            label=str(label).strip(),
            declared_type=declared_type,
            raw_value=raw_value,
            remote_value_type=value_type,
        )


class RemoteEntity(BaseModel):
    """
    A record fetched from the remote system.

    Immutable once built; owned by exactly one synchronization pass.
    """
    remote_id: str = Field(..., min_length=1)
    entity_kind: EntityKind

    name: Optional[str] = None
    status: Optional[str] = None
    account_ref_id: Optional[str] = None
    account_ref_name: Optional[str] = None
    remote_created_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None

    custom_fields: Tuple[CustomFieldValue, ...] = ()
    payload: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    def well_known_values(self) -> Dict[str, Any]:
        """Values for the fixed remote-sourced columns"""
        return {
            "remote_id": self.remote_id,
            "name": self.name,
            "status": self.status,
            "account_ref_id": self.account_ref_id,
            "account_ref_name": self.account_ref_name,
            "remote_created_at": self.remote_created_at,
            "remote_updated_at": self.remote_updated_at,
            "remote_payload": self.payload,
        }

    @classmethod
    def from_payload(cls, entity_kind: EntityKind, payload: Dict[str, Any]) -> "RemoteEntity":
        """
        Parse one remote JSON record.

        Raises:
            RecordParseError: If the record has no id or is not an object
        """
        if not isinstance(payload, dict):
            raise RecordParseError(
                "Remote record is not a JSON object",
                context={"entity_kind": EntityKind(entity_kind).value}
            )

        remote_id = payload.get("id")
        if remote_id is None or str(remote_id).strip() == "":
            raise RecordParseError(
                "Remote record has no id",
                context={"entity_kind": EntityKind(entity_kind).value}
            )
        remote_id = str(remote_id)

        custom_fields = []
        seen_labels = set()
        for index, item in enumerate(payload.get("custom_field_values") or []):
            try:
                field = CustomFieldValue.from_payload(item)
            except (ValueError, AttributeError) as e:
                logger.warning(f"Skipping custom field #{index} of {remote_id}: {e}")
                continue
            if field.label in seen_labels:
                logger.debug(f"Duplicate custom field {field.label!r} on {remote_id}, keeping first")
                continue
            seen_labels.add(field.label)
            custom_fields.append(field)

        account_ref = payload.get("account_ref") or {}

        return cls(
            remote_id=remote_id,
            entity_kind=entity_kind,
            name=cls._display_name(EntityKind(entity_kind), payload),
            status=payload.get("status"),
            account_ref_id=str(account_ref["id"]) if account_ref.get("id") is not None else None,
            account_ref_name=account_ref.get("display_name"),
            remote_created_at=cls._parse_timestamp(payload.get("created_at")),
            remote_updated_at=cls._parse_timestamp(payload.get("updated_at")),
            custom_fields=tuple(custom_fields),
            payload=payload,
        )

    @staticmethod
    def _display_name(entity_kind: EntityKind, payload: Dict[str, Any]) -> Optional[str]:
        for key in NAME_KEYS[entity_kind]:
            value = payload.get(key)
            if value:
                return str(value)
        if entity_kind == EntityKind.CONTACTS:
            parts = [payload.get("first_name"), payload.get("last_name")]
            joined = " ".join(p for p in parts if p)
            return joined or None
        return None

    @staticmethod
    def _parse_timestamp(value: Any) -> Optional[datetime]:
        """Well-known timestamps are informational; unparseable ones become None"""
        if value is None or value == "":
            return None
        try:
            return parse_utc_datetime(value)
        except ValueError:
            logger.debug(f"Ignoring unparseable timestamp {value!r}")
            return None
