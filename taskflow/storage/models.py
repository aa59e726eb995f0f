from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Task:
    id: str
    owner_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    completed: bool = False
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Task":
        priority = doc.get("priority")
        return cls(
            id=doc["id"],
            owner_id=doc["owner_id"],
            title=doc["title"],
            description=doc.get("description"),
            completed=bool(doc.get("completed", False)),
            priority=TaskPriority(priority) if priority else None,
            due_date=doc.get("due_date"),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


@dataclass
class Thread:
    id: str
    owner_id: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    status: ThreadStatus = ThreadStatus.ACTIVE

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Thread":
        return cls(
            id=doc["id"],
            owner_id=doc["owner_id"],
            title=doc.get("title"),
            status=ThreadStatus(doc.get("status") or ThreadStatus.ACTIVE.value),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


@dataclass
class Message:
    id: str
    thread_id: str
    owner_id: str
    role: MessageRole
    content: str
    created_at: datetime

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            id=doc["id"],
            thread_id=doc["thread_id"],
            owner_id=doc["owner_id"],
            role=MessageRole(doc["role"]),
            content=doc["content"],
            created_at=doc["created_at"],
        )


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    created_at: datetime
    password_algo: str = "argon2id"

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "User":
        return cls(
            id=doc["id"],
            email=doc["email"],
            password_hash=doc["password_hash"],
            password_algo=doc.get("password_algo") or "argon2id",
            created_at=doc["created_at"],
        )


@dataclass
class TaskStats:
    total: int
    completed: int
    pending: int
    completion_rate: int
