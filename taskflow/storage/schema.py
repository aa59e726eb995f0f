"""Table declarations shared by the storage backends.

Every table lists its columns and composite indexes. Reads go through
:func:`plan_query`, which only accepts an equality prefix of a declared index
plus an optional range on the next indexed field, so both backends answer the
same shapes of query with the same ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

COLUMN_TYPES = frozenset({"text", "bool", "timestamp"})
ORDERS = frozenset({"asc", "desc"})


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str = "text"
    nullable: bool = True
    unique: bool = False
    references: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in COLUMN_TYPES:
            raise ValueError(f"unsupported column type {self.type!r}")


@dataclass(frozen=True)
class IndexSpec:
    name: str
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: Tuple[ColumnSpec, ...]
    indexes: Tuple[IndexSpec, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    def column(self, name: str) -> ColumnSpec:
        for col in self.columns:
            if col.name == name:
                return col
        raise ValueError(f"table {self.name!r} has no column {name!r}")

    def index(self, name: str) -> IndexSpec:
        for idx in self.indexes:
            if idx.name == name:
                return idx
        raise ValueError(f"table {self.name!r} has no index {name!r}")

    @property
    def foreign_keys(self) -> List[ColumnSpec]:
        return [col for col in self.columns if col.references]


@dataclass(frozen=True)
class IndexQuery:
    """A validated read against one index."""

    table: str
    index: IndexSpec
    eq: Tuple[Tuple[str, Any], ...]
    range_field: Optional[str] = None
    lower: Any = None
    upper: Any = None
    skip_nulls: bool = False
    order: str = "asc"
    limit: Optional[int] = None
    order_fields: Tuple[str, ...] = field(default=())

    def matches(self, doc: Mapping[str, Any]) -> bool:
        for name, value in self.eq:
            if doc.get(name) != value:
                return False
        if self.range_field is None:
            return True
        value = doc.get(self.range_field)
        if value is None:
            return not (self.skip_nulls or self.lower is not None or self.upper is not None)
        if self.lower is not None and value < self.lower:
            return False
        if self.upper is not None and value >= self.upper:
            return False
        return True

    def sort_key(self, doc: Mapping[str, Any]) -> Tuple:
        return tuple(_null_low(doc.get(name)) for name in self.order_fields)

    def apply(self, docs: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Filter, order and limit ``docs`` the way the index would."""
        selected = [dict(doc) for doc in docs if self.matches(doc)]
        selected.sort(key=self.sort_key, reverse=self.order == "desc")
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


def _null_low(value: Any) -> Tuple[int, Any]:
    if value is None:
        return (0, 0)
    return (1, value)


def plan_query(
    spec: TableSpec,
    index: str,
    *,
    eq: Mapping[str, Any],
    lower: Any = None,
    upper: Any = None,
    skip_nulls: bool = False,
    order: str = "asc",
    limit: Optional[int] = None,
) -> IndexQuery:
    """Validate a read against ``spec`` and return its plan.

    ``eq`` must bind a non-empty prefix of the index fields. ``lower``
    (inclusive), ``upper`` (exclusive) and ``skip_nulls`` apply to the first
    index field after that prefix. Results are ordered by the remaining index
    fields, then ``created_at``, then ``id``; nulls sort lowest.
    """

    idx = spec.index(index)
    if order not in ORDERS:
        raise ValueError(f"order must be one of {sorted(ORDERS)}")
    if limit is not None and limit < 0:
        raise ValueError("limit must be non-negative")
    if not eq:
        raise ValueError(f"query on {spec.name}.{idx.name} must constrain {idx.fields[0]!r}")
    prefix = idx.fields[: len(eq)]
    if len(eq) > len(idx.fields) or set(prefix) != set(eq.keys()):
        raise ValueError(
            f"equality fields {sorted(eq)} are not a prefix of index "
            f"{spec.name}.{idx.name} {list(idx.fields)}"
        )
    remaining = idx.fields[len(eq):]
    range_field = remaining[0] if remaining else None
    if range_field is None and (lower is not None or upper is not None or skip_nulls):
        raise ValueError(f"index {spec.name}.{idx.name} has no field left for a range")

    order_fields: List[str] = list(remaining)
    for tiebreak in ("created_at", "id"):
        if tiebreak not in order_fields and tiebreak in spec.column_names:
            order_fields.append(tiebreak)

    return IndexQuery(
        table=spec.name,
        index=idx,
        eq=tuple((name, eq[name]) for name in prefix),
        range_field=range_field,
        lower=lower,
        upper=upper,
        skip_nulls=skip_nulls,
        order=order,
        limit=limit,
        order_fields=tuple(order_fields),
    )


def _ts(name: str, nullable: bool = False) -> ColumnSpec:
    return ColumnSpec(name, "timestamp", nullable=nullable)


USERS = TableSpec(
    name="users",
    columns=(
        ColumnSpec("id", nullable=False),
        ColumnSpec("email", nullable=False, unique=True),
        ColumnSpec("password_hash", nullable=False),
        ColumnSpec("password_algo", nullable=False),
        _ts("created_at"),
    ),
    indexes=(IndexSpec("by_email", ("email",)),),
)

TASKS = TableSpec(
    name="tasks",
    columns=(
        ColumnSpec("id", nullable=False),
        ColumnSpec("owner_id", nullable=False),
        ColumnSpec("title", nullable=False),
        ColumnSpec("description"),
        ColumnSpec("completed", "bool", nullable=False),
        ColumnSpec("priority"),
        _ts("due_date", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    ),
    indexes=(
        IndexSpec("by_owner", ("owner_id",)),
        IndexSpec("by_owner_completed", ("owner_id", "completed")),
        IndexSpec("by_owner_created", ("owner_id", "created_at")),
        IndexSpec("by_owner_due", ("owner_id", "due_date")),
    ),
)

THREADS = TableSpec(
    name="threads",
    columns=(
        ColumnSpec("id", nullable=False),
        ColumnSpec("owner_id", nullable=False),
        ColumnSpec("title"),
        ColumnSpec("status", nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    ),
    indexes=(
        IndexSpec("by_owner", ("owner_id",)),
        IndexSpec("by_owner_status", ("owner_id", "status")),
    ),
)

MESSAGES = TableSpec(
    name="messages",
    columns=(
        ColumnSpec("id", nullable=False),
        ColumnSpec("thread_id", nullable=False, references="threads"),
        ColumnSpec("owner_id", nullable=False),
        ColumnSpec("role", nullable=False),
        ColumnSpec("content", nullable=False),
        _ts("created_at"),
    ),
    indexes=(
        IndexSpec("by_thread", ("thread_id",)),
        IndexSpec("by_owner", ("owner_id",)),
    ),
)

TABLES: Dict[str, TableSpec] = {
    spec.name: spec for spec in (USERS, TASKS, THREADS, MESSAGES)
}


def table_spec(name: str) -> TableSpec:
    try:
        return TABLES[name]
    except KeyError:
        raise ValueError(f"unknown table {name!r}") from None


def is_timestamp(spec: TableSpec, column: str) -> bool:
    return spec.column(column).type == "timestamp"


def encode_value(spec: TableSpec, column: str, value: Any) -> Any:
    """JSON-safe form of a column value."""
    if value is not None and isinstance(value, datetime):
        return value.isoformat()
    return value


def decode_value(spec: TableSpec, column: str, value: Any) -> Any:
    if value is not None and is_timestamp(spec, column) and isinstance(value, str):
        return datetime.fromisoformat(value)
    return value
