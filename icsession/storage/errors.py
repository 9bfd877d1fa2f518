from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for failures raised by a session store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or reference constraint was violated (duplicate identifier, unknown principal)."""


class StoreUnavailable(StorageError):
    """The backend cannot serve requests (closed or unreachable)."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
