from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation.

    A missing record is not a StoreError; lookups return ``None`` for that.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreError"]
