from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional

from taskflow.service.errors import ValidationError
from taskflow.service.orchestrator import Orchestrator
from taskflow.service.result import Err, Ok, Result
from taskflow.service.validation import (
    Check,
    is_valid_limit,
    is_valid_message_content,
    is_valid_message_role,
    is_valid_thread_status,
    is_valid_thread_title,
)
from taskflow.storage.models import Message, MessageRole, Thread, ThreadStatus
from taskflow.storage.repositories import MessageRepository, RecordMutation, ThreadRepository

if TYPE_CHECKING:
    from taskflow.service.auth import AuthContext

THREAD_NOT_FOUND = "Thread not found"
MESSAGE_NOT_FOUND = "Message not found"
THREAD_TITLE_MESSAGE = "Thread title must be between 1 and 100 characters"
STATUS_MESSAGE = "Status must be active or archived"
CONTENT_MESSAGE = "Message content must be between 1 and 5000 characters"
ROLE_MESSAGE = "Role must be user or assistant"


class ThreadEndpoints:
    """Assistant conversation threads owned by the caller."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        threads: ThreadRepository,
        messages: MessageRepository,
    ) -> None:
        self.orchestrator = orchestrator
        self.threads = threads
        self.messages = messages

    async def create_thread(
        self, principal: Optional["AuthContext"], title: Any = None
    ) -> Result[str]:
        def checks() -> List[Check]:
            return [
                ("title", title is None or is_valid_thread_title(title), THREAD_TITLE_MESSAGE)
            ]

        def action(caller: "AuthContext") -> Result[str]:
            return Ok(self.threads.create(caller.user_id, title).id)

        return await self.orchestrator.mutate("createThread", principal, checks, action)

    async def archive_thread(
        self, principal: Optional["AuthContext"], thread_id: str
    ) -> Result[None]:
        def apply(mutation: RecordMutation[Thread], _thread: Thread) -> None:
            mutation.update(status=ThreadStatus.ARCHIVED)

        def action(caller: "AuthContext") -> Result[None]:
            return self.orchestrator.within_owned(
                self.threads, thread_id, caller.user_id, apply, not_found=THREAD_NOT_FOUND
            )

        return await self.orchestrator.mutate("updateThread", principal, lambda: [], action)

    async def delete_thread(
        self, principal: Optional["AuthContext"], thread_id: str
    ) -> Result[int]:
        """Delete the thread and its messages; returns how many messages went."""

        def apply(mutation: RecordMutation[Thread], _thread: Thread) -> int:
            removed = self.messages.delete_by_thread(thread_id)
            mutation.delete()
            return removed

        def action(caller: "AuthContext") -> Result[int]:
            return self.orchestrator.within_owned(
                self.threads, thread_id, caller.user_id, apply, not_found=THREAD_NOT_FOUND
            )

        return await self.orchestrator.mutate("deleteThread", principal, lambda: [], action)

    def get_thread(self, principal: Optional["AuthContext"], thread_id: str) -> Result[Thread]:
        return self.orchestrator.query(
            "getThread",
            principal,
            lambda caller: self.orchestrator.read_owned(
                self.threads.get(thread_id), caller.user_id, not_found=THREAD_NOT_FOUND
            ),
        )

    def list_threads(self, principal: Optional["AuthContext"]) -> Result[List[Thread]]:
        return self.orchestrator.query(
            "listThreads",
            principal,
            lambda caller: Ok(self.threads.list_by_owner(caller.user_id)),
        )

    def list_threads_by_status(
        self, principal: Optional["AuthContext"], status: Any
    ) -> Result[List[Thread]]:
        def read(caller: "AuthContext") -> Result[List[Thread]]:
            if not is_valid_thread_status(status):
                return Err(ValidationError(STATUS_MESSAGE, field="status"))
            return Ok(self.threads.list_by_owner_and_status(caller.user_id, ThreadStatus(status)))

        return self.orchestrator.query("listThreadsByStatus", principal, read)


class MessageEndpoints:
    """Messages inside the caller's threads."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        threads: ThreadRepository,
        messages: MessageRepository,
        *,
        page_size: int = 50,
    ) -> None:
        self.orchestrator = orchestrator
        self.threads = threads
        self.messages = messages
        self.page_size = page_size

    async def send_message(
        self,
        principal: Optional["AuthContext"],
        thread_id: str,
        content: Any,
        role: Any = MessageRole.USER,
    ) -> Result[str]:
        """Append a message to an owned thread and bump the thread's updated_at."""

        def checks() -> List[Check]:
            return [
                ("content", is_valid_message_content(content), CONTENT_MESSAGE),
                ("role", is_valid_message_role(role), ROLE_MESSAGE),
            ]

        def action(caller: "AuthContext") -> Result[str]:
            def apply(mutation: RecordMutation[Thread], thread: Thread) -> str:
                message = self.messages.create(
                    thread.id, caller.user_id, MessageRole(role), content
                )
                self.threads.touch(mutation)
                return message.id

            return self.orchestrator.within_owned(
                self.threads, thread_id, caller.user_id, apply, not_found=THREAD_NOT_FOUND
            )

        return await self.orchestrator.mutate("sendMessage", principal, checks, action)

    async def delete_message(
        self, principal: Optional["AuthContext"], message_id: str
    ) -> Result[None]:
        def action(caller: "AuthContext") -> Result[None]:
            return self.orchestrator.within_owned(
                self.messages,
                message_id,
                caller.user_id,
                lambda mutation, _message: mutation.delete(),
                not_found=MESSAGE_NOT_FOUND,
            )

        return await self.orchestrator.mutate("deleteMessage", principal, lambda: [], action)

    def list_messages(
        self,
        principal: Optional["AuthContext"],
        thread_id: str,
        limit: Optional[int] = None,
    ) -> Result[List[Message]]:
        def read(caller: "AuthContext") -> Result[List[Message]]:
            if not is_valid_limit(limit):
                return Err(ValidationError("Limit must be a positive integer", field="limit"))
            owned = self.orchestrator.read_owned(
                self.threads.get(thread_id), caller.user_id, not_found=THREAD_NOT_FOUND
            )
            if isinstance(owned, Err):
                return owned
            return Ok(self.messages.list_by_thread(thread_id, limit or self.page_size))

        return self.orchestrator.query("listMessages", principal, read)
