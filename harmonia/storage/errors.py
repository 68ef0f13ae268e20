from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by account and key-value stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness constraint (e.g. account email) was violated."""


class StoreUnavailable(StorageError):
    """The backing store could not be reached."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
