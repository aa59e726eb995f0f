"""Tests for the per-entity repositories over the memory store."""

from datetime import datetime, timedelta, timezone

import pytest

from taskflow.storage.common import next_timestamp
from taskflow.storage.memory import MemoryStore
from taskflow.storage.models import MessageRole, TaskPriority, ThreadStatus
from taskflow.storage.repositories import (
    MessageRepository,
    TaskRepository,
    ThreadRepository,
    UserRepository,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def frozen():
    return FrozenClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def tasks(store, frozen):
    return TaskRepository(store, clock=frozen)


@pytest.fixture
def threads(store, frozen):
    return ThreadRepository(store, clock=frozen)


@pytest.fixture
def messages(store, frozen):
    return MessageRepository(store, clock=frozen)


class TestTimestamps:
    def test_next_timestamp_prefers_now(self):
        assert next_timestamp(T0, T0 + timedelta(seconds=1)) == T0 + timedelta(seconds=1)

    def test_next_timestamp_never_repeats(self):
        assert next_timestamp(T0, T0) == T0 + timedelta(microseconds=1)
        assert next_timestamp(T0, T0 - timedelta(hours=1)) == T0 + timedelta(microseconds=1)

    def test_updated_at_strictly_increases_under_frozen_clock(self, tasks):
        task = tasks.create("user-1", "Write report")
        first = tasks.update(task.id, title="Write the report")
        second = tasks.update(task.id, title="Write the final report")
        assert task.updated_at < first.updated_at < second.updated_at
        assert second.created_at == task.created_at


class TestTaskRepository:
    def test_create_round_trip(self, tasks):
        due = T0 + timedelta(days=3)
        task = tasks.create(
            "user-1", "Pay rent", description="monthly", priority=TaskPriority.HIGH, due_date=due
        )
        fetched = tasks.get(task.id)
        assert fetched == task
        assert fetched.priority is TaskPriority.HIGH
        assert fetched.completed is False

    def test_owner_id_is_immutable(self, tasks):
        task = tasks.create("user-1", "Mine")
        with pytest.raises(ValueError):
            tasks.update(task.id, owner_id="user-2")
        assert tasks.get(task.id).owner_id == "user-1"

    def test_unknown_field_rejected(self, tasks):
        task = tasks.create("user-1", "Mine")
        with pytest.raises(ValueError):
            tasks.update(task.id, created_at=T0)

    def test_update_missing_returns_none(self, tasks):
        assert tasks.update("missing", title="x") is None

    def test_toggle_completed(self, tasks):
        task = tasks.create("user-1", "Flip")
        assert tasks.toggle_completed(task.id).completed is True
        assert tasks.toggle_completed(task.id).completed is False
        assert tasks.toggle_completed("missing") is None

    def test_listing_and_counts(self, tasks, frozen):
        a = tasks.create("user-1", "A")
        frozen.now = T0 + timedelta(minutes=1)
        b = tasks.create("user-1", "B", completed=True)
        tasks.create("user-2", "Other")
        assert [t.id for t in tasks.list_by_owner("user-1")] == [b.id, a.id]
        assert [t.id for t in tasks.list_by_owner_and_completed("user-1", True)] == [b.id]
        assert tasks.count_by_owner("user-1") == 2
        assert tasks.count_completed("user-1") == 1
        assert [t.id for t in tasks.list_recent("user-1", limit=1)] == [b.id]

    def test_upcoming_skips_undated(self, tasks):
        tasks.create("user-1", "Someday")
        later = tasks.create("user-1", "Later", due_date=T0 + timedelta(days=5))
        sooner = tasks.create("user-1", "Sooner", due_date=T0 + timedelta(days=1))
        assert [t.id for t in tasks.list_upcoming("user-1")] == [sooner.id, later.id]
        assert [t.id for t in tasks.list_upcoming("user-1", limit=1)] == [sooner.id]

    def test_created_since_and_due_before(self, tasks, frozen):
        old = tasks.create("user-1", "Old", due_date=T0 + timedelta(hours=1))
        frozen.now = T0 + timedelta(days=2)
        new = tasks.create("user-1", "New")
        assert [t.id for t in tasks.list_created_since("user-1", T0 + timedelta(days=1))] == [new.id]
        assert [t.id for t in tasks.list_due_before("user-1", frozen.now)] == [old.id]


class TestThreadAndMessageRepositories:
    def test_archive_and_status_listing(self, threads):
        thread = threads.create("user-1", "Planning")
        assert threads.list_active("user-1") == [thread]
        archived = threads.archive(thread.id)
        assert archived.status is ThreadStatus.ARCHIVED
        assert threads.list_active("user-1") == []
        assert threads.count_active_by_owner("user-1") == 0
        assert threads.count_by_owner("user-1") == 1

    def test_touch_bumps_updated_at(self, threads):
        thread = threads.create("user-1")
        with threads.guarded(thread.id) as mutation:
            touched = threads.touch(mutation)
        assert touched.updated_at > thread.updated_at
        assert threads.get(thread.id).updated_at == touched.updated_at

    def test_messages_in_conversation_order(self, threads, messages, frozen):
        thread = threads.create("user-1")
        first = messages.create(thread.id, "user-1", MessageRole.USER, "hello")
        frozen.now = T0 + timedelta(seconds=5)
        second = messages.create(thread.id, "user-1", MessageRole.ASSISTANT, "hi there")
        assert [m.id for m in messages.list_by_thread(thread.id)] == [first.id, second.id]
        assert [m.id for m in messages.list_by_thread(thread.id, limit=1)] == [first.id]
        assert messages.latest_in_thread(thread.id).id == second.id
        assert messages.count_by_thread(thread.id) == 2
        assert messages.count_by_owner("user-1") == 2

    def test_delete_by_thread(self, threads, messages):
        thread = threads.create("user-1")
        for text in ("one", "two", "three"):
            messages.create(thread.id, "user-1", MessageRole.USER, text)
        assert messages.delete_by_thread(thread.id) == 3
        assert threads.delete(thread.id)


class TestUserRepository:
    def test_lookup_by_email(self, store, frozen):
        users = UserRepository(store, clock=frozen)
        user = users.create("a@b.co", "hash")
        assert users.get_by_email("a@b.co") == user
        assert users.get_by_email("missing@b.co") is None
        assert user.password_algo == "argon2id"
