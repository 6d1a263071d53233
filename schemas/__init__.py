"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models used throughout the sync pipeline
and the operator API:

Schemas:
    remote: Remote entities and their label-keyed custom field values
    sync: Sync run summaries, record errors and catalog listings
    api: API endpoint request/response schemas

Features:
    - Automatic data validation
    - Immutable remote records
    - JSON serialization/deserialization
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.remote import RemoteEntity, CustomFieldValue
    from schemas.sync import SyncRunSummary, RecordError
    from schemas.api import HealthCheckResponse

Example:
    # Parse a remote matter
    entity = RemoteEntity.from_payload(EntityKind.MATTERS, payload)

    # Custom fields are keyed by their human label
    labels = [f.label for f in entity.custom_fields]
"""

__all__ = [
    "RemoteEntity",
    "CustomFieldValue",
    "ReferenceValue",
    "RecordError",
    "SyncRunSummary",
    "FieldCatalogEntryInfo",
    "CatalogStats",
    "HealthCheckResponse",
    "SyncRunListResponse",
    "CatalogResponse",
]
