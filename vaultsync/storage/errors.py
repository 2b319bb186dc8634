from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by the store implementations."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or ownership constraint rejected the write.

    ``detail["field"]`` names the offending column when one applies.
    """

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["StorageError", "ConstraintViolation"]
