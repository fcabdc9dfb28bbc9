"""Storage layer - Persistence of identities, activity and risk events."""

from fingerprint_risk.storage.errors import StoreConflictError, StoreError, StoreTimeoutError

__all__ = [
    "StoreConflictError",
    "StoreError",
    "StoreTimeoutError",
]
