from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BackendUnavailable(Exception):
    """A backing store could not be reached or timed out."""

    backend: str = "store"

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class CacheUnavailable(BackendUnavailable):
    """The revocation store (Redis) failed or timed out."""

    backend = "cache"


class StoreUnavailable(BackendUnavailable):
    """The document store (Postgres) failed or timed out."""

    backend = "database"


__all__ = [
    "BackendUnavailable",
    "CacheUnavailable",
    "ConstraintViolation",
    "StoreUnavailable",
]
