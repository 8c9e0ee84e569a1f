"""
Cache error types.

The read/write hot path degrades instead of raising; these errors are
raised only by operations that promise removal (delete, delete_pattern,
clear) and by the serialization boundary.
"""

from typing import Optional


class CacheError(Exception):
    """Base exception for cache operations."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Cache operation failed: {operation}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)


class CachePartialFailureError(CacheError):
    """Some keys were removed before the shared store failed."""

    def __init__(self, operation: str, deleted: int, cause: Optional[BaseException] = None):
        self.deleted = deleted
        super().__init__(operation, cause)


class CacheSerializationError(CacheError):
    """A payload could not be encoded or decoded."""
    pass
