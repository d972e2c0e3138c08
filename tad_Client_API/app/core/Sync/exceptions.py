# Sync/exceptions.py
# Description: Exception hierarchy for the client sync & reconciliation engine.
#
"""
Sync Exception Hierarchy
========================

- SyncError: Base exception for all sync-related errors
- TransportError: Network/server failure reported by the transport adapter (retried by the scheduler)
- ConflictError: Field-level disagreement that could not be handled by the active policy
- ConsistencyError: Divergence detected or repair failure in the consistency checker
- SyncValidationError: Malformed record data (never retried)
- MutationError: Optimistic mutation failed; raised after the cache was rolled back
- SyncInProgressError: A second sync was requested while one is in flight
- StateError: Operation attempted on a closed component
"""
#
# Imports
from enum import Enum
from typing import Any, Dict, List, Optional
#
#######################################################################################################################
#
# Classes:


class SyncError(Exception):
    """
    Base exception for the sync library.

    Attributes:
        operation: The sync operation that failed (e.g., "bidirectional_sync", "update")
        context: Additional context about the error (record ids, fields, ...)
        original_error: The exception that caused this error, if any
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"Operation: {self.operation}")
        if self.context:
            parts.append("Context: " + ", ".join(f"{k}={v}" for k, v in self.context.items()))
        if self.original_error:
            parts.append(f"Caused by: {type(self.original_error).__name__}: {self.original_error}")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "operation": self.operation,
            "context": self.context,
            "original_error": str(self.original_error) if self.original_error else None
        }


class TransportError(SyncError):
    """Represents an error during data transport (read/write/delete)."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ConflictError(SyncError):
    """Represents a data conflict during synchronization."""

    def __init__(self, message: str, record_id: Optional[str] = None, field: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        if record_id:
            context["record_id"] = record_id
        if field:
            context["field"] = field
        super().__init__(message, context=context, **kwargs)
        self.record_id = record_id
        self.field = field


class ConsistencyError(SyncError):
    """Represents a failure while auditing or repairing cached data."""
    pass


class SyncValidationError(SyncError):
    """Malformed record data. Surfaced immediately, never retried."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class MutationError(SyncError):
    """An optimistic mutation failed. The cache has already been rolled back when this is raised."""

    def __init__(self, message: str, kind: Optional[str] = None, record_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        if kind:
            context["kind"] = kind
        if record_id:
            context["record_id"] = record_id
        super().__init__(message, operation=kwargs.pop("operation", kind), context=context, **kwargs)
        self.kind = kind
        self.record_id = record_id


class SyncInProgressError(SyncError):
    """Raised by the sync service when a sync is already running."""
    pass


class StateError(SyncError):
    """Represents an operation on a component that has been closed."""
    pass


# --- Error categories & recovery hints ---

class ErrorCategory(str, Enum):
    CONNECTION = "connection"
    RATE_LIMIT = "rate_limit"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    SERVER = "server"
    UNKNOWN = "unknown"


_CATEGORY_KEYWORDS = [
    (ErrorCategory.RATE_LIMIT, ("rate limit", "too many requests", "429")),
    (ErrorCategory.CONNECTION, ("connect", "network", "timeout", "timed out", "offline", "unreachable")),
    (ErrorCategory.CONFLICT, ("conflict",)),
    (ErrorCategory.VALIDATION, ("validation", "invalid", "must be", "required")),
    (ErrorCategory.SERVER, ("server", "500", "502", "503", "internal")),
]

_RECOVERY_SUGGESTIONS = {
    ErrorCategory.CONNECTION: "Check your network connection; sync will resume when the connection is restored.",
    ErrorCategory.RATE_LIMIT: "The server is throttling requests. Wait a moment and retry.",
    ErrorCategory.CONFLICT: "Review and resolve the pending conflicts manually.",
    ErrorCategory.VALIDATION: "Correct the highlighted fields and save again.",
    ErrorCategory.SERVER: "The server reported an error. Retry later.",
    ErrorCategory.UNKNOWN: "Retry the sync. If the problem persists, reset the sync state.",
}


def categorize_error(error: Optional[Any]) -> Optional[ErrorCategory]:
    """Maps an error (exception or message) to an ErrorCategory. None in, None out."""
    if error is None:
        return None
    if isinstance(error, SyncValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(error, ConflictError):
        return ErrorCategory.CONFLICT
    message = str(error).lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return category
    if isinstance(error, TransportError):
        return ErrorCategory.CONNECTION
    return ErrorCategory.UNKNOWN


def recovery_suggestion(category: Optional[ErrorCategory]) -> Optional[str]:
    if category is None:
        return None
    return _RECOVERY_SUGGESTIONS[category]

#
# End of exceptions.py
#######################################################################################################################
