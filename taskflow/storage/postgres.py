from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskflow.logging import get_logger
from taskflow.storage.common import RecordHandle, new_id, normalize_doc
from taskflow.storage.errors import ConstraintViolation
from taskflow.storage.schema import TABLES, IndexQuery, TableSpec, plan_query, table_spec

_PG_TYPES = {"text": "TEXT", "bool": "BOOLEAN", "timestamp": "TIMESTAMPTZ"}

# (store, connection) of the record() block open in this context
_active_connection: ContextVar[Optional[Tuple["PostgresStore", Any]]] = ContextVar(
    "taskflow_pg_active_connection", default=None
)


def schema_statements(spec: TableSpec) -> List[str]:
    """DDL creating ``spec``'s table and its declared indexes."""
    columns = []
    for col in spec.columns:
        parts = [col.name, _PG_TYPES[col.type]]
        if col.name == "id":
            parts.append("PRIMARY KEY")
        elif not col.nullable:
            parts.append("NOT NULL")
        if col.unique:
            parts.append("UNIQUE")
        if col.references:
            parts.append(f"REFERENCES {col.references}(id)")
        columns.append(" ".join(parts))
    statements = [f"CREATE TABLE IF NOT EXISTS {spec.name} ({', '.join(columns)})"]
    for idx in spec.indexes:
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {spec.name}_{idx.name} "
            f"ON {spec.name} ({', '.join(idx.fields)})"
        )
    return statements


def _where_clause(plan: IndexQuery) -> Tuple[str, List[Any]]:
    clauses = [f"{name} = %s" for name, _ in plan.eq]
    params: List[Any] = [value for _, value in plan.eq]
    if plan.range_field is not None:
        bounded = plan.lower is not None or plan.upper is not None
        if plan.skip_nulls or bounded:
            clauses.append(f"{plan.range_field} IS NOT NULL")
        if plan.lower is not None:
            clauses.append(f"{plan.range_field} >= %s")
            params.append(plan.lower)
        if plan.upper is not None:
            clauses.append(f"{plan.range_field} < %s")
            params.append(plan.upper)
    return " AND ".join(clauses), params


def select_sql(plan: IndexQuery) -> Tuple[str, List[Any]]:
    """SELECT for ``plan``; nulls sort lowest in both directions."""
    where, params = _where_clause(plan)
    if plan.order == "desc":
        direction = "DESC NULLS LAST"
    else:
        direction = "ASC NULLS FIRST"
    order_by = ", ".join(f"{name} {direction}" for name in plan.order_fields)
    query = f"SELECT * FROM {plan.table} WHERE {where} ORDER BY {order_by}"
    if plan.limit is not None:
        query += " LIMIT %s"
        params.append(plan.limit)
    return query, params


def count_sql(plan: IndexQuery) -> Tuple[str, List[Any]]:
    where, params = _where_clause(plan)
    return f"SELECT COUNT(*) AS c FROM {plan.table} WHERE {where}", params


def _violation(spec: TableSpec, exc: errors.IntegrityError) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    detail = {
        "table": spec.name,
        "constraint": getattr(diag, "constraint_name", None),
    }
    if isinstance(exc, errors.ForeignKeyViolation):
        return ConstraintViolation(f"{spec.name} foreign key violation", detail)
    if isinstance(exc, errors.UniqueViolation):
        return ConstraintViolation(f"{spec.name} unique violation", detail)
    return ConstraintViolation(f"{spec.name} integrity violation", detail)


class PostgresStore:
    """Postgres-backed document store over the declared table specs."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield the open record() connection if any, else a pooled one."""
        active = _active_connection.get()
        if active is not None and active[0] is self:
            yield active[1]
            return
        with self.pool.connection() as conn:
            yield conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for spec in TABLES.values():
                for statement in schema_statements(spec):
                    conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=sorted(TABLES))

    def insert(self, table: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        spec = table_spec(table)
        row = normalize_doc(spec.column_names, {**doc, "id": doc.get("id") or new_id()})
        columns = ", ".join(row.keys())
        placeholders = ", ".join(["%s"] * len(row))
        try:
            with self._connect() as conn:
                with conn.transaction():
                    inserted = conn.execute(
                        f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
                        tuple(row.values()),
                    ).fetchone()
        except errors.IntegrityError as exc:
            raise _violation(spec, exc) from exc
        return dict(inserted) if inserted else row

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        table_spec(table)
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = %s", (record_id,)).fetchone()
        return dict(row) if row else None

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
        query, params = select_sql(plan)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [dict(row) for row in rows]

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
        query, params = count_sql(plan)
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return int(row["c"]) if row else 0

    def delete(self, table: str, record_id: str) -> bool:
        spec = table_spec(table)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    cur = conn.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
        except errors.IntegrityError as exc:
            raise _violation(spec, exc) from exc
        return cur.rowcount > 0

    def delete_where(self, table: str, index: str, *, eq: Mapping[str, Any]) -> int:
        spec = table_spec(table)
        where, params = _where_clause(plan_query(spec, index, eq=eq))
        try:
            with self._connect() as conn:
                with conn.transaction():
                    cur = conn.execute(f"DELETE FROM {table} WHERE {where}", tuple(params))
        except errors.IntegrityError as exc:
            raise _violation(spec, exc) from exc
        return cur.rowcount

    @contextmanager
    def record(self, table: str, record_id: str) -> Iterator[RecordHandle]:
        """Lock the row with ``SELECT ... FOR UPDATE`` for the block's duration.

        Store calls made inside the block reuse its connection, so they commit
        or roll back together with the staged changes.
        """

        spec = table_spec(table)
        with self._connect() as conn:
            token = _active_connection.set((self, conn))
            try:
                with conn.transaction():
                    row = conn.execute(
                        f"SELECT * FROM {table} WHERE id = %s FOR UPDATE", (record_id,)
                    ).fetchone()
                    handle = RecordHandle(table, record_id, row)
                    yield handle
                    self._commit(conn, spec, handle)
            except errors.IntegrityError as exc:
                raise _violation(spec, exc) from exc
            finally:
                _active_connection.reset(token)

    def _commit(self, conn: Any, spec: TableSpec, handle: RecordHandle) -> None:
        if handle.deleted:
            conn.execute(f"DELETE FROM {spec.name} WHERE id = %s", (handle.record_id,))
            return
        changes = handle.changes
        if not changes:
            return
        unknown = set(changes) - set(spec.column_names)
        if unknown:
            raise ValueError(f"unknown columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in changes)
        conn.execute(
            f"UPDATE {spec.name} SET {assignments} WHERE id = %s",
            (*changes.values(), handle.record_id),
        )

    def close(self) -> None:
        self.pool.close()
