"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from taskflow.storage.errors import ConstraintViolation

# Smallest step that survives a Postgres timestamptz round-trip
TIMESTAMP_RESOLUTION = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_timestamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly after ``previous``, preferring ``now``."""
    current = ensure_utc(now or utcnow())
    if previous is None:
        return current
    floor = ensure_utc(previous) + TIMESTAMP_RESOLUTION
    return current if current >= floor else floor


def new_id() -> str:
    return str(uuid.uuid4())


class RecordHandle:
    """Buffered view of one record held by ``Store.record``.

    ``patch`` and ``delete`` are staged and written when the surrounding
    ``record`` block exits without an exception.
    """

    def __init__(self, table: str, record_id: str, doc: Optional[Mapping[str, Any]]):
        self.table = table
        self.record_id = record_id
        self._original = dict(doc) if doc is not None else None
        self._changes: Dict[str, Any] = {}
        self._deleted = False

    @property
    def exists(self) -> bool:
        return self._original is not None and not self._deleted

    @property
    def doc(self) -> Optional[Dict[str, Any]]:
        if not self.exists:
            return None
        merged = dict(self._original or {})
        merged.update(self._changes)
        return merged

    @property
    def changes(self) -> Dict[str, Any]:
        return dict(self._changes)

    @property
    def deleted(self) -> bool:
        return self._deleted

    def patch(self, fields: Mapping[str, Any]) -> None:
        if not self.exists:
            raise ConstraintViolation(
                f"{self.table} record missing", {"id": self.record_id}
            )
        if "id" in fields:
            raise ValueError("record id is immutable")
        self._changes.update(fields)

    def delete(self) -> None:
        if not self.exists:
            raise ConstraintViolation(
                f"{self.table} record missing", {"id": self.record_id}
            )
        self._deleted = True


class Store(Protocol):
    """Document store contract implemented by MemoryStore and PostgresStore.

    Only repositories hold a store. Calls made inside an open ``record`` block
    on the same thread join that block's lock (and transaction, for Postgres).
    """

    def insert(self, table: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    def query(
        self,
        table: str,
        index: str,
        *,
        eq: Mapping[str, Any],
        lower: Any = None,
        upper: Any = None,
        skip_nulls: bool = False,
        order: str = "asc",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def count(
        self,
        table: str,
        index: str,
        *,
        eq: Mapping[str, Any],
        lower: Any = None,
        upper: Any = None,
        skip_nulls: bool = False,
    ) -> int:
        ...

    def delete(self, table: str, record_id: str) -> bool:
        ...

    def delete_where(self, table: str, index: str, *, eq: Mapping[str, Any]) -> int:
        ...

    def record(self, table: str, record_id: str) -> AbstractContextManager[RecordHandle]:
        ...

    def close(self) -> None:
        ...


def normalize_doc(columns: List[str], doc: Mapping[str, Any]) -> Dict[str, Any]:
    """Project ``doc`` onto the table columns, rejecting unknown keys."""
    unknown = set(doc) - set(columns)
    if unknown:
        raise ValueError(f"unknown columns: {sorted(unknown)}")
    normalized = {name: doc.get(name) for name in columns}
    for name, value in normalized.items():
        if isinstance(value, datetime):
            normalized[name] = ensure_utc(value)
    return normalized
