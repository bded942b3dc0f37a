"""
Exception classes for fieldsync.
"""

from typing import Any, Dict, Optional


class FieldSyncError(Exception):
    """Base exception for all fieldsync errors."""

    # What the caller should do about it: "retry", "reload", "fix_field" or None
    user_action: Optional[str] = None

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(FieldSyncError):
    """Raised when there's an error in configuration."""

    pass


class ValidationError(FieldSyncError):
    """Raised when a field definition or an edit is invalid."""

    user_action = "fix_field"

    def __init__(
        self,
        message: str,
        field_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        if field_id:
            details["field_id"] = field_id
        super().__init__(message, details)
        self.field_id = field_id


class SourceError(FieldSyncError):
    """Raised when there's an error reading the tabular source."""

    pass


class SourceUnavailableError(SourceError):
    """Raised when a scan failed after all retries. Safe to try again."""

    user_action = "retry"

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        attempts: Optional[int] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if source_id:
            details["source_id"] = source_id
        if attempts:
            details["attempts"] = attempts
        super().__init__(message, details, cause)
        self.source_id = source_id
        self.attempts = attempts


class SourceNotFoundError(SourceError):
    """Raised when the source does not exist."""

    pass


class SourceAuthError(SourceError):
    """Raised when the source rejected our credentials."""

    def __init__(
        self,
        message: str = "Source rejected the supplied credentials",
        status_code: Optional[int] = None,
    ) -> None:
        details = {"status_code": status_code} if status_code else None
        super().__init__(message, details)
        self.status_code = status_code


class StoreError(FieldSyncError):
    """Raised when there's an error with schema store operations."""

    pass


class DatabaseConnectionError(StoreError):
    """Raised when there's an error establishing or maintaining database connections."""

    pass


class SchemaNotFoundError(StoreError):
    """Raised when no canonical schema exists yet for a connection."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"No canonical schema stored for connection '{connection_id}'")
        self.connection_id = connection_id


class ConflictError(StoreError):
    """Raised when a save was attempted against a stale schema version."""

    user_action = "reload"

    def __init__(
        self,
        connection_id: str,
        expected_version: Optional[str],
        actual_version: Optional[str] = None,
    ) -> None:
        message = (
            f"Schema for connection '{connection_id}' changed since it was loaded: "
            f"expected version {expected_version}"
        )
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(message)
        self.connection_id = connection_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvariantViolationError(FieldSyncError):
    """Raised when reconciliation produced data that must never be persisted."""

    pass


class SessionStateError(FieldSyncError):
    """Raised when an operation is not allowed in the session's current state."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(f"Cannot {operation} while session is {state}")
        self.operation = operation
        self.state = state


class PublishError(FieldSyncError):
    """Raised when a schema change event could not be published."""

    pass


class ListenerError(FieldSyncError):
    """Raised when there's an error with the schema change listener."""

    pass
