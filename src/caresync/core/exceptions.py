"""Core Exceptions Module.

Exceptions used throughout CareSync. Local storage errors propagate to the
caller synchronously; sync errors are raised by the remote client and handled
by the dispatcher, never by the interactive caller.
"""

from typing import Any, Dict, Optional


class CareSyncError(Exception):
    """Base exception for all CareSync errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        """Initialize exception.

        Args:
            message: Error message
            code: Optional error code
        """
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(CareSyncError):
    """Raised when a record fails validation before being written."""

    def __init__(self, message: str):
        """Initialize ValidationError."""
        super().__init__(message, "VALIDATION_ERROR")


class RecordNotFoundError(CareSyncError):
    """Raised when a record does not exist in the local store."""

    def __init__(self, entity_type: str, record_id: str):
        """Initialize RecordNotFoundError."""
        super().__init__(f"{entity_type} {record_id} not found", "RECORD_NOT_FOUND")
        self.entity_type = entity_type
        self.record_id = record_id


class ConfigurationError(CareSyncError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str):
        """Initialize ConfigurationError."""
        super().__init__(message, "CONFIGURATION_ERROR")


class StorageFailure(CareSyncError):
    """Raised when a local write could not be durably committed."""

    def __init__(self, message: str = "Local storage operation failed"):
        """Initialize StorageFailure."""
        super().__init__(message, "STORAGE_FAILURE")


class SyncFailure(CareSyncError):
    """Base exception for errors talking to the remote authority."""

    retryable = False

    def __init__(
        self,
        message: str,
        code: str = "SYNC_FAILURE",
        status: Optional[int] = None,
    ):
        """Initialize SyncFailure.

        Args:
            message: Error message
            code: Error code
            status: HTTP status returned by the remote, if any
        """
        super().__init__(message, code)
        self.status = status


class TransientSyncFailure(SyncFailure):
    """Network or server-side temporary failure; retried with backoff."""

    retryable = True

    def __init__(self, message: str = "Remote temporarily unavailable", status: Optional[int] = None):
        """Initialize TransientSyncFailure."""
        super().__init__(message, "SYNC_TRANSIENT", status)


class RejectedSyncFailure(SyncFailure):
    """Payload refused by the remote; not retried automatically."""

    def __init__(
        self,
        message: str = "Remote rejected the record",
        status: Optional[int] = None,
        conflict: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize RejectedSyncFailure.

        Args:
            message: Error message
            status: HTTP status returned by the remote
            conflict: True when the remote reported a version conflict
            details: Body returned by the remote, if any
        """
        super().__init__(message, "SYNC_CONFLICT" if conflict else "SYNC_REJECTED", status)
        self.conflict = conflict
        self.details = details or {}


class AuthFailure(SyncFailure):
    """Credentials refused by the remote; sync pauses until re-authentication."""

    def __init__(self, message: str = "Remote authentication failed", status: Optional[int] = None):
        """Initialize AuthFailure."""
        super().__init__(message, "SYNC_UNAUTHORIZED", status)


class ConflictDivergence(CareSyncError):
    """Both copies of a record changed since the last successful sync.

    Carried as the reason for a superseded version; resolved by the conflict
    resolver rather than raised to the caller.
    """

    def __init__(self, entity_type: str, record_id: str, detail: str = "both sides modified"):
        """Initialize ConflictDivergence."""
        super().__init__(f"{entity_type} {record_id}: {detail}", "CONFLICT_DIVERGENCE")
        self.entity_type = entity_type
        self.record_id = record_id
        self.detail = detail
