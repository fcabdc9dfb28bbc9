"""Exceptions raised by the storage layer."""


class StoreError(Exception):
    """Base exception for store failures.

    Store errors are transient from the caller's point of view: the same
    operation may succeed when retried later.
    """


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its deadline."""


class StoreConflictError(StoreError):
    """Raised when a write keeps conflicting after bounded retries."""
