"""
Custom exceptions for the sync engine with structured error context.

This module provides the exception hierarchy used throughout the
synchronization pipeline. Each exception carries context information
(remote identifier, field label, URL, ...) so failures can be inspected
or replayed from the SyncRun audit record.

Exception Hierarchy:
    SyncException (base)
    ├── FetchError                  fatal for the run
    │   ├── NetworkError
    │   ├── RateLimitError
    │   ├── AuthenticationError
    │   ├── TokenRefreshError
    │   └── RemoteResponseError
    │       └── ResourceNotFoundError
    ├── RecordParseError            single record, non-fatal
    ├── CoercionError               single field, non-fatal
    ├── MigrationStatementError     single DDL statement, non-fatal
    ├── MergeError                  single record write, non-fatal
    ├── CatalogError                fatal for the run
    │   └── CatalogCorruptionError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (remote_id, field_label, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)

    Retry counts and delays come from settings, not from the error.
    """
    pass


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401 after a refresh, 403)
    - Resource not found (HTTP 404)
    - Malformed response bodies
    """
    pass


# ============================================================================
# Fetch Errors (fatal for the run)
# ============================================================================

class FetchError(SyncException):
    """
    Base exception for remote fetch failures.

    Context should include:
        - api_url: The endpoint that failed
        - entity_kind: Entity kind being synchronized
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class NetworkError(RetryableError, FetchError):
    """Network, timeout and 5xx errors; retried until MAX_RETRIES is exhausted."""
    pass


class RateLimitError(RetryableError, FetchError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, FetchError):
    """Authentication failures that survive one token refresh."""
    pass


class TokenRefreshError(NonRetryableError, FetchError):
    """The OAuth refresh endpoint rejected the refresh token or is unreachable."""
    pass


class RemoteResponseError(NonRetryableError, FetchError):
    """Non-retryable 4xx responses and unparseable bodies."""
    pass


class ResourceNotFoundError(RemoteResponseError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Per-record / per-field Errors (non-fatal)
# ============================================================================

class RecordParseError(SyncException):
    """
    A remote record could not be turned into a RemoteEntity (e.g. missing id).

    Context should include:
        - entity_kind: Entity kind
        - remote_id: Remote identifier (if any)
    """
    pass


class CoercionError(SyncException):
    """
    A single custom field value could not be coerced to its declared type.

    Context should include:
        - field_label: Label of the custom field
        - declared_type: Declared value type
        - raw_value: The value that failed (truncated)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        field_label: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.field_label = field_label
        if field_label:
            self.context["field_label"] = field_label


class MigrationStatementError(SyncException):
    """
    A single DDL statement of a migration plan failed.

    Context should include:
        - table_name: Table being evolved
        - column: Column the statement adds
        - statement: The rendered SQL
    """
    pass


class MergeError(SyncException):
    """
    A single record could not be written (e.g. constraint violation).

    Context should include:
        - remote_id: Remote identifier of the record
        - table_name: Target table
        - operation: UPSERT
    """
    pass


# ============================================================================
# Catalog Errors (fatal for the run)
# ============================================================================

class CatalogError(SyncException):
    """The field catalog store is unavailable."""
    pass


class CatalogCorruptionError(CatalogError):
    """
    The persisted catalog violates its invariants.

    Context should include:
        - local_column: Column claimed by more than one label
        - labels: The conflicting labels
    """
    pass
