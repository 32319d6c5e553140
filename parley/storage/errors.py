from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by the storage backends."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key constraint rejected the write."""


class StorageUnavailable(StorageError):
    """The backing database could not be reached or the write did not commit."""


__all__ = ["StorageError", "ConstraintViolation", "StorageUnavailable"]
