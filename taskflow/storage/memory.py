from __future__ import annotations

import json
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from taskflow.logging import get_logger
from taskflow.storage.common import RecordHandle, ensure_utc, new_id, normalize_doc
from taskflow.storage.errors import ConstraintViolation
from taskflow.storage.schema import (
    TABLES,
    IndexQuery,
    TableSpec,
    decode_value,
    encode_value,
    plan_query,
    table_spec,
)


class MemoryStore:
    """In-memory document store for tests and single-node deployments.

    Tables are dicts of id -> row. Each leading index field keeps a bucket of
    ids per value so owner/thread scoped reads never scan the whole table.
    """

    def __init__(self, fs_root: str = "/tmp/taskflow", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        # RLock so reads and inserts can run inside an open record() block
        self._data_lock = threading.RLock()
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in TABLES}
        self._buckets: Dict[str, Dict[str, Dict[Any, Set[str]]]] = {}
        if persist and self._load_state():
            self.logger.info(
                "memory_store_loaded",
                path=str(self._state_path()),
                rows={name: len(rows) for name, rows in self.tables.items()},
            )
        self._rebuild_buckets()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- indexing ---------------------------------------------------------

    @staticmethod
    def _leading_fields(spec: TableSpec) -> List[str]:
        fields: List[str] = []
        for idx in spec.indexes:
            if idx.fields[0] not in fields:
                fields.append(idx.fields[0])
        return fields

    def _rebuild_buckets(self) -> None:
        self._buckets = {}
        for name, spec in TABLES.items():
            self._buckets[name] = {field: {} for field in self._leading_fields(spec)}
            for row in self.tables[name].values():
                self._index_add(spec, row)

    def _index_add(self, spec: TableSpec, row: Mapping[str, Any]) -> None:
        for field, bucket in self._buckets[spec.name].items():
            bucket.setdefault(row.get(field), set()).add(row["id"])

    def _index_remove(self, spec: TableSpec, row: Mapping[str, Any]) -> None:
        for field, bucket in self._buckets[spec.name].items():
            ids = bucket.get(row.get(field))
            if ids is None:
                continue
            ids.discard(row["id"])
            if not ids:
                bucket.pop(row.get(field), None)

    def _candidates(self, plan: IndexQuery) -> List[Dict[str, Any]]:
        field, value = plan.eq[0]
        rows = self.tables[plan.table]
        ids = self._buckets[plan.table][field].get(value, set())
        return [rows[record_id] for record_id in ids]

    # -- constraints ------------------------------------------------------

    def _check_row(self, spec: TableSpec, row: Mapping[str, Any]) -> None:
        for col in spec.columns:
            value = row.get(col.name)
            if value is None:
                if not col.nullable:
                    raise ConstraintViolation(
                        f"{spec.name}.{col.name} may not be null", {"column": col.name}
                    )
                continue
            if col.references and value not in self.tables[col.references]:
                raise ConstraintViolation(
                    f"{spec.name}.{col.name} references a missing {col.references} row",
                    {"column": col.name, "value": value},
                )
            if col.unique:
                for other in self.tables[spec.name].values():
                    if other["id"] != row["id"] and other.get(col.name) == value:
                        raise ConstraintViolation(
                            f"{spec.name}.{col.name} must be unique",
                            {"column": col.name},
                        )

    def _check_not_referenced(self, spec: TableSpec, record_id: str) -> None:
        for other in TABLES.values():
            for col in other.foreign_keys:
                if col.references != spec.name:
                    continue
                bucket = self._buckets[other.name].get(col.name)
                if bucket is not None:
                    referenced = bool(bucket.get(record_id))
                else:
                    referenced = any(
                        row.get(col.name) == record_id
                        for row in self.tables[other.name].values()
                    )
                if referenced:
                    raise ConstraintViolation(
                        f"{spec.name} row still referenced by {other.name}",
                        {"id": record_id, "table": other.name},
                    )

    # -- operations -------------------------------------------------------

    def insert(self, table: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        spec = table_spec(table)
        row = normalize_doc(spec.column_names, {**doc, "id": doc.get("id") or new_id()})
        with self._data_lock:
            if row["id"] in self.tables[table]:
                raise ConstraintViolation(f"duplicate {table} id", {"id": row["id"]})
            self._check_row(spec, row)
            self.tables[table][row["id"]] = row
            self._index_add(spec, row)
            self._persist_state()
            return dict(row)

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        table_spec(table)
        with self._data_lock:
            row = self.tables[table].get(record_id)
            return dict(row) if row is not None else None

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
        plan = plan_query(
            table_spec(table),
            index,
            eq=eq,
            lower=lower,
            upper=upper,
            skip_nulls=skip_nulls,
            order=order,
            limit=limit,
        )
        with self._data_lock:
            return plan.apply(self._candidates(plan))

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
        plan = plan_query(
            table_spec(table), index, eq=eq, lower=lower, upper=upper, skip_nulls=skip_nulls
        )
        with self._data_lock:
            return sum(1 for row in self._candidates(plan) if plan.matches(row))

    def delete(self, table: str, record_id: str) -> bool:
        spec = table_spec(table)
        with self._data_lock:
            if record_id not in self.tables[table]:
                return False
            self._delete_locked(spec, record_id)
            self._persist_state()
            return True

    def delete_where(self, table: str, index: str, *, eq: Mapping[str, Any]) -> int:
        spec = table_spec(table)
        plan = plan_query(spec, index, eq=eq)
        with self._data_lock:
            doomed = [row["id"] for row in self._candidates(plan) if plan.matches(row)]
            for record_id in doomed:
                self._delete_locked(spec, record_id)
            if doomed:
                self._persist_state()
            return len(doomed)

    def _delete_locked(self, spec: TableSpec, record_id: str) -> None:
        self._check_not_referenced(spec, record_id)
        row = self.tables[spec.name].pop(record_id)
        self._index_remove(spec, row)

    @contextmanager
    def record(self, table: str, record_id: str) -> Iterator[RecordHandle]:
        """Hold the store lock while the caller inspects and stages changes."""
        spec = table_spec(table)
        with self._data_lock:
            handle = RecordHandle(table, record_id, self.tables[table].get(record_id))
            yield handle
            self._commit(spec, handle)

    def _commit(self, spec: TableSpec, handle: RecordHandle) -> None:
        if handle.deleted:
            self._delete_locked(spec, handle.record_id)
            self._persist_state()
            return
        changes = handle.changes
        if not changes:
            return
        unknown = set(changes) - set(spec.column_names)
        if unknown:
            raise ValueError(f"unknown columns: {sorted(unknown)}")
        current = self.tables[spec.name][handle.record_id]
        updated = dict(current)
        for name, value in changes.items():
            updated[name] = ensure_utc(value) if isinstance(value, datetime) else value
        self._check_row(spec, updated)
        self._index_remove(spec, current)
        self.tables[spec.name][handle.record_id] = updated
        self._index_add(spec, updated)
        self._persist_state()

    def close(self) -> None:
        return None

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            name: [
                {col: encode_value(TABLES[name], col, val) for col, val in row.items()}
                for row in rows.values()
            ]
            for name, rows in self.tables.items()
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, spec in TABLES.items():
            self.tables[name] = {
                row["id"]: {
                    col: decode_value(spec, col, row.get(col)) for col in spec.column_names
                }
                for row in data.get(name, [])
            }
        return True


class MemoryCounterStore:
    """Process-local counter registry with versioned compare-and-set.

    Entries expire ``ttl_ms`` after their last write; expiry is applied lazily
    on the next read.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        # key -> (state, version, expires_at_ms)
        self._entries: Dict[str, Tuple[Dict[str, Any], int, int]] = {}

    def _live(self, key: str) -> Optional[Tuple[Dict[str, Any], int, int]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[2] <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return dict(entry[0]), entry[1]

    async def compare_and_set(
        self,
        key: str,
        expected_version: Optional[int],
        state: Mapping[str, Any],
        ttl_ms: int,
    ) -> bool:
        with self._lock:
            entry = self._live(key)
            current_version = entry[1] if entry is not None else None
            if current_version != expected_version:
                return False
            next_version = (current_version or 0) + 1
            self._entries[key] = (dict(state), next_version, self._clock() + ttl_ms)
            return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
