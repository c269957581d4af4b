from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreCorruptedError(RuntimeError):
    """The on-disk document exists but cannot be parsed back into records."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"store file {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason


__all__ = ["ConstraintViolation", "StoreCorruptedError"]
