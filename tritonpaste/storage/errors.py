from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing store fails for reasons other than a constraint."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a uniqueness or FK constraint rejects a write.

    The enclosing transaction is already aborted when this surfaces.
    """


__all__ = ["StoreError", "ConstraintViolation"]
