from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone

import pytest
from psycopg import errors

from taskflow.logging import get_logger
from taskflow.storage.errors import ConstraintViolation
from taskflow.storage.postgres import PostgresStore, count_sql, schema_statements, select_sql
from taskflow.storage.schema import MESSAGES, TABLES, TASKS, USERS, plan_query


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    def __init__(self, row=None, fail_with=None):
        self.row = row
        self.fail_with = fail_with
        self.statements = []

    def transaction(self):
        return nullcontext()

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if self.fail_with is not None and sql.startswith(("INSERT", "UPDATE")):
            raise self.fail_with
        if sql.startswith("SELECT"):
            return FakeCursor(self.row)
        return FakeCursor(rowcount=1)


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


class DuplicateEmail(errors.UniqueViolation):
    diag = None


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger(__name__)
    store.pool = FakePool(conn)
    return store


class TestDDL:
    def test_tasks_table(self):
        statements = schema_statements(TASKS)
        assert statements[0] == (
            "CREATE TABLE IF NOT EXISTS tasks (id TEXT PRIMARY KEY, owner_id TEXT NOT NULL, "
            "title TEXT NOT NULL, description TEXT, completed BOOLEAN NOT NULL, priority TEXT, "
            "due_date TIMESTAMPTZ, created_at TIMESTAMPTZ NOT NULL, updated_at TIMESTAMPTZ NOT NULL)"
        )
        assert "CREATE INDEX IF NOT EXISTS tasks_by_owner_due ON tasks (owner_id, due_date)" in statements
        assert len(statements) == 1 + len(TASKS.indexes)

    def test_unique_and_foreign_keys(self):
        assert "email TEXT NOT NULL UNIQUE" in schema_statements(USERS)[0]
        assert "thread_id TEXT NOT NULL REFERENCES threads(id)" in schema_statements(MESSAGES)[0]

    def test_ensure_schema_runs_every_statement(self):
        conn = FakeConnection()
        _store(conn)._ensure_schema()
        expected = sum(len(schema_statements(spec)) for spec in TABLES.values())
        assert len(conn.statements) == expected


class TestQuerySQL:
    def test_upcoming_skips_null_due_dates(self):
        plan = plan_query(TASKS, "by_owner_due", eq={"owner_id": "u1"}, skip_nulls=True, limit=3)
        sql, params = select_sql(plan)
        assert sql == (
            "SELECT * FROM tasks WHERE owner_id = %s AND due_date IS NOT NULL "
            "ORDER BY due_date ASC NULLS FIRST, created_at ASC NULLS FIRST, id ASC NULLS FIRST "
            "LIMIT %s"
        )
        assert params == ["u1", 3]

    def test_bounded_range_descending(self):
        lower = datetime(2024, 1, 1, tzinfo=timezone.utc)
        upper = datetime(2024, 1, 2, tzinfo=timezone.utc)
        plan = plan_query(
            TASKS, "by_owner_created", eq={"owner_id": "u1"}, lower=lower, upper=upper, order="desc"
        )
        sql, params = select_sql(plan)
        assert sql == (
            "SELECT * FROM tasks WHERE owner_id = %s AND created_at IS NOT NULL "
            "AND created_at >= %s AND created_at < %s "
            "ORDER BY created_at DESC NULLS LAST, id DESC NULLS LAST"
        )
        assert params == ["u1", lower, upper]

    def test_count(self):
        plan = plan_query(TASKS, "by_owner_completed", eq={"owner_id": "u1", "completed": True})
        sql, params = count_sql(plan)
        assert sql == "SELECT COUNT(*) AS c FROM tasks WHERE owner_id = %s AND completed = %s"
        assert params == ["u1", True]


class TestStoreOperations:
    def test_count_reads_alias(self):
        conn = FakeConnection(row={"c": 4})
        assert _store(conn).count("threads", "by_owner", eq={"owner_id": "u1"}) == 4

    def test_record_patch_shares_connection(self):
        row = {"id": "t1", "owner_id": "u1", "title": "Old", "completed": False}
        conn = FakeConnection(row=row)
        store = _store(conn)
        with store.record("tasks", "t1") as handle:
            assert handle.doc["title"] == "Old"
            assert store.get("tasks", "t1")["id"] == "t1"
            handle.patch({"title": "New"})

        assert store.pool.checkouts == 1
        assert conn.statements[0] == ("SELECT * FROM tasks WHERE id = %s FOR UPDATE", ("t1",))
        assert conn.statements[-1] == ("UPDATE tasks SET title = %s WHERE id = %s", ("New", "t1"))

    def test_record_delete(self):
        conn = FakeConnection(row={"id": "m1"})
        with _store(conn).record("messages", "m1") as handle:
            handle.delete()
        assert conn.statements[-1] == ("DELETE FROM messages WHERE id = %s", ("m1",))

    def test_record_without_changes_writes_nothing(self):
        conn = FakeConnection(row={"id": "t1"})
        with _store(conn).record("tasks", "t1"):
            pass
        assert len(conn.statements) == 1

    def test_insert_rejects_unknown_columns(self):
        with pytest.raises(ValueError):
            _store(FakeConnection()).insert("tasks", {"owner_id": "u1", "colour": "red"})

    def test_unique_violation_becomes_constraint_violation(self):
        conn = FakeConnection(fail_with=DuplicateEmail("duplicate key"))
        with pytest.raises(ConstraintViolation) as exc_info:
            _store(conn).insert(
                "users",
                {
                    "email": "a@b.co",
                    "password_hash": "x",
                    "password_algo": "argon2id",
                    "created_at": datetime.now(timezone.utc),
                },
            )
        assert exc_info.value.detail["table"] == "users"
