"""
Domain Exceptions

All errors raised by the sync engine inherit from EventSyncError so callers
can catch the whole family at once.

- NotFoundError: mapping or catalog lookup miss
- MappingValidationError: malformed date/time or missing identifier
- DuplicateSaleError: an already-recorded sale, for callers that prefer raising
- StorageError: backing store read/write failure
- UpstreamFetchError: historical import page fetch failure
- ImportCursorError: malformed or inconsistent batch cursor
"""

from typing import Any, Dict, Optional


class EventSyncError(Exception):
    """Base exception for all sync engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(EventSyncError):
    """Raised when a product or mapping cannot be found.

    Resolution misses are normally reported as results rather than raised;
    this is for call sites where a miss makes the operation meaningless.
    """


class MappingValidationError(EventSyncError):
    """Raised when a mapping entry or sale carries malformed data.

    Entry-level: the offending entry is skipped, the batch continues.
    """


class DuplicateSaleError(EventSyncError):
    """Raised when a sale has already been recorded under the same dedup key."""


class StorageError(EventSyncError):
    """Raised when the backing store fails to read or write.

    The unit of work is rolled back before this propagates.
    """


class UpstreamFetchError(EventSyncError):
    """Raised when a historical import page cannot be fetched.

    Carries the unchanged cursor so the same page can be retried.
    """

    def __init__(
        self,
        message: str,
        cursor: Any = None,
        logs: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.cursor = cursor
        self.logs = logs or []


class ImportCursorError(EventSyncError):
    """Raised when a batch cursor is malformed or inconsistent."""
