from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreConflict(Exception):
    """Raised when a compare-and-set keeps losing to concurrent writers."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"counter {key!r} still contended after {attempts} attempts")
        self.key = key
        self.attempts = attempts


__all__ = ["ConstraintViolation", "StoreConflict"]
