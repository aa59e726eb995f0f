"""Per-entity data access.

Each repository is the only code that reads or writes its table. Mutations of
existing rows go through :meth:`Repository.guarded`, which holds the row for a
whole fetch, check and mutate sequence.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    FrozenSet,
    Generic,
    Iterator,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
)

from taskflow.storage.common import RecordHandle, Store, ensure_utc, next_timestamp, utcnow
from taskflow.storage.models import (
    Message,
    MessageRole,
    Task,
    TaskPriority,
    Thread,
    ThreadStatus,
    User,
)

M = TypeVar("M")


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


class RecordMutation(Generic[M]):
    """Typed view over a held record; changes are written when the block exits."""

    def __init__(self, repo: "Repository[M]", handle: RecordHandle) -> None:
        self._repo = repo
        self._handle = handle

    @property
    def record(self) -> Optional[M]:
        doc = self._handle.doc
        return self._repo._to_model(doc) if doc is not None else None

    def update(self, **changes: Any) -> M:
        doc = self._handle.doc
        if doc is None:
            raise LookupError(f"{self._repo.table} {self._handle.record_id} does not exist")
        self._handle.patch(self._repo._prepare_patch(doc, changes))
        return self._repo._to_model(self._handle.doc)

    def delete(self) -> None:
        self._handle.delete()


class Repository(Generic[M]):
    table: ClassVar[str]
    model: ClassVar[Type[Any]]
    mutable_fields: ClassVar[FrozenSet[str]] = frozenset()
    tracks_updates: ClassVar[bool] = True

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def _to_model(self, doc: Mapping[str, Any]) -> M:
        return self.model.from_doc(doc)

    def _to_models(self, docs: List[Dict[str, Any]]) -> List[M]:
        return [self._to_model(doc) for doc in docs]

    def _prepare_patch(self, current: Mapping[str, Any], changes: Mapping[str, Any]) -> Dict[str, Any]:
        if "owner_id" in changes and changes["owner_id"] != current.get("owner_id"):
            raise ValueError(f"{self.table} owner_id is immutable")
        illegal = set(changes) - self.mutable_fields - {"owner_id"}
        if illegal:
            raise ValueError(f"{self.table} fields not updatable: {sorted(illegal)}")
        patch = {
            name: _column_value(value) for name, value in changes.items() if name != "owner_id"
        }
        if self.tracks_updates:
            patch["updated_at"] = next_timestamp(current.get("updated_at"), self._clock())
        return patch

    def get(self, record_id: str) -> Optional[M]:
        doc = self._store.get(self.table, record_id)
        return self._to_model(doc) if doc is not None else None

    @contextmanager
    def guarded(self, record_id: str) -> Iterator[RecordMutation[M]]:
        """Hold ``record_id`` until the block exits; staged changes commit on exit."""
        with self._store.record(self.table, record_id) as handle:
            yield RecordMutation(self, handle)

    def update(self, record_id: str, **changes: Any) -> Optional[M]:
        with self.guarded(record_id) as mutation:
            if mutation.record is None:
                return None
            return mutation.update(**changes)

    def delete(self, record_id: str) -> bool:
        return self._store.delete(self.table, record_id)

    def _insert(self, fields: Mapping[str, Any]) -> M:
        doc = self._store.insert(
            self.table, {name: _column_value(value) for name, value in fields.items()}
        )
        return self._to_model(doc)


class TaskRepository(Repository[Task]):
    table = "tasks"
    model = Task
    mutable_fields = frozenset({"title", "description", "completed", "priority", "due_date"})

    def create(
        self,
        owner_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        priority: Optional[TaskPriority] = None,
        due_date: Optional[datetime] = None,
        completed: bool = False,
    ) -> Task:
        now = self._clock()
        return self._insert(
            {
                "owner_id": owner_id,
                "title": title,
                "description": description,
                "completed": completed,
                "priority": priority,
                "due_date": due_date,
                "created_at": now,
                "updated_at": now,
            }
        )

    def list_by_owner(self, owner_id: str, limit: Optional[int] = None) -> List[Task]:
        return self._to_models(
            self._store.query(
                self.table, "by_owner", eq={"owner_id": owner_id}, order="desc", limit=limit
            )
        )

    def list_by_owner_and_completed(self, owner_id: str, completed: bool) -> List[Task]:
        return self._to_models(
            self._store.query(
                self.table,
                "by_owner_completed",
                eq={"owner_id": owner_id, "completed": completed},
                order="desc",
            )
        )

    def list_upcoming(self, owner_id: str, limit: Optional[int] = None) -> List[Task]:
        """Tasks with a due date, soonest first."""
        return self._to_models(
            self._store.query(
                self.table,
                "by_owner_due",
                eq={"owner_id": owner_id},
                skip_nulls=True,
                order="asc",
                limit=limit,
            )
        )

    def list_recent(self, owner_id: str, limit: int = 10) -> List[Task]:
        return self._to_models(
            self._store.query(
                self.table,
                "by_owner_created",
                eq={"owner_id": owner_id},
                order="desc",
                limit=limit,
            )
        )

    def list_created_since(self, owner_id: str, since: datetime) -> List[Task]:
        return self._to_models(
            self._store.query(
                self.table,
                "by_owner_created",
                eq={"owner_id": owner_id},
                lower=ensure_utc(since),
                order="desc",
            )
        )

    def list_due_before(self, owner_id: str, before: datetime) -> List[Task]:
        return self._to_models(
            self._store.query(
                self.table,
                "by_owner_due",
                eq={"owner_id": owner_id},
                upper=ensure_utc(before),
                order="asc",
            )
        )

    def count_by_owner(self, owner_id: str) -> int:
        return self._store.count(self.table, "by_owner", eq={"owner_id": owner_id})

    def count_completed(self, owner_id: str) -> int:
        return self._store.count(
            self.table, "by_owner_completed", eq={"owner_id": owner_id, "completed": True}
        )

    def toggle_completed(self, task_id: str) -> Optional[Task]:
        with self.guarded(task_id) as mutation:
            task = mutation.record
            if task is None:
                return None
            return mutation.update(completed=not task.completed)


class ThreadRepository(Repository[Thread]):
    table = "threads"
    model = Thread
    mutable_fields = frozenset({"title", "status"})

    def create(
        self,
        owner_id: str,
        title: Optional[str] = None,
        status: ThreadStatus = ThreadStatus.ACTIVE,
    ) -> Thread:
        now = self._clock()
        return self._insert(
            {
                "owner_id": owner_id,
                "title": title,
                "status": status,
                "created_at": now,
                "updated_at": now,
            }
        )

    def list_by_owner(self, owner_id: str) -> List[Thread]:
        return self._to_models(
            self._store.query(self.table, "by_owner", eq={"owner_id": owner_id}, order="desc")
        )

    def list_by_owner_and_status(self, owner_id: str, status: ThreadStatus) -> List[Thread]:
        return self._to_models(
            self._store.query(
                self.table,
                "by_owner_status",
                eq={"owner_id": owner_id, "status": ThreadStatus(status).value},
                order="desc",
            )
        )

    def list_active(self, owner_id: str) -> List[Thread]:
        return self.list_by_owner_and_status(owner_id, ThreadStatus.ACTIVE)

    def archive(self, thread_id: str) -> Optional[Thread]:
        return self.update(thread_id, status=ThreadStatus.ARCHIVED)

    def touch(self, mutation: RecordMutation[Thread]) -> Thread:
        """Bump ``updated_at`` on a held thread without changing its fields."""
        return mutation.update()

    def count_by_owner(self, owner_id: str) -> int:
        return self._store.count(self.table, "by_owner", eq={"owner_id": owner_id})

    def count_active_by_owner(self, owner_id: str) -> int:
        return self._store.count(
            self.table,
            "by_owner_status",
            eq={"owner_id": owner_id, "status": ThreadStatus.ACTIVE.value},
        )


class MessageRepository(Repository[Message]):
    table = "messages"
    model = Message
    tracks_updates = False

    def create(self, thread_id: str, owner_id: str, role: MessageRole, content: str) -> Message:
        return self._insert(
            {
                "thread_id": thread_id,
                "owner_id": owner_id,
                "role": role,
                "content": content,
                "created_at": self._clock(),
            }
        )

    def list_by_thread(self, thread_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages in conversation order; ``limit`` keeps the oldest N."""
        return self._to_models(
            self._store.query(
                self.table, "by_thread", eq={"thread_id": thread_id}, order="asc", limit=limit
            )
        )

    def list_by_owner(self, owner_id: str) -> List[Message]:
        return self._to_models(
            self._store.query(self.table, "by_owner", eq={"owner_id": owner_id}, order="desc")
        )

    def latest_in_thread(self, thread_id: str) -> Optional[Message]:
        docs = self._store.query(
            self.table, "by_thread", eq={"thread_id": thread_id}, order="desc", limit=1
        )
        return self._to_model(docs[0]) if docs else None

    def delete_by_thread(self, thread_id: str) -> int:
        return self._store.delete_where(self.table, "by_thread", eq={"thread_id": thread_id})

    def count_by_thread(self, thread_id: str) -> int:
        return self._store.count(self.table, "by_thread", eq={"thread_id": thread_id})

    def count_by_owner(self, owner_id: str) -> int:
        return self._store.count(self.table, "by_owner", eq={"owner_id": owner_id})


class UserRepository(Repository[User]):
    table = "users"
    model = User
    tracks_updates = False

    def create(self, email: str, password_hash: str, password_algo: str = "argon2id") -> User:
        return self._insert(
            {
                "email": email,
                "password_hash": password_hash,
                "password_algo": password_algo,
                "created_at": self._clock(),
            }
        )

    def get_by_email(self, email: str) -> Optional[User]:
        docs = self._store.query(self.table, "by_email", eq={"email": email}, limit=1)
        return self._to_model(docs[0]) if docs else None
