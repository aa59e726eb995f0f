from __future__ import annotations

import math
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

from taskflow.service.errors import ValidationError
from taskflow.service.orchestrator import Orchestrator
from taskflow.service.result import Err, Ok, Result
from taskflow.service.validation import (
    Check,
    is_valid_due_date,
    is_valid_limit,
    is_valid_priority,
    is_valid_task_description,
    is_valid_task_title,
    parse_due_date,
)
from taskflow.storage.common import utcnow
from taskflow.storage.models import Task, TaskPriority, TaskStats
from taskflow.storage.repositories import TaskRepository

if TYPE_CHECKING:
    from taskflow.service.auth import AuthContext

TASK_NOT_FOUND = "Task not found"
TITLE_MESSAGE = "Task title must be between 1 and 200 characters"
DESCRIPTION_MESSAGE = "Task description must be less than 2000 characters"
PRIORITY_MESSAGE = "Priority must be low, medium, or high"
DUE_DATE_MESSAGE = "Due date must be in the future"
COMPLETED_MESSAGE = "Completed must be true or false"

UPDATABLE_FIELDS = ("title", "description", "priority", "due_date", "completed")


def completion_rate(completed: int, total: int) -> int:
    """Whole percentage, rounding halves up; 0 when there are no tasks."""
    if total <= 0:
        return 0
    return int(math.floor(completed * 100 / total + 0.5))


def _limit_check(limit: Optional[int]) -> Result[None]:
    if not is_valid_limit(limit):
        return Err(ValidationError("Limit must be a positive integer", field="limit"))
    return Ok(None)


class TaskEndpoints:
    """Task mutations and queries for the authenticated caller."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        tasks: TaskRepository,
        *,
        recent_limit: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.orchestrator = orchestrator
        self.tasks = tasks
        self.recent_limit = recent_limit
        self._clock = clock

    # -- mutations --------------------------------------------------------

    async def create_task(
        self,
        principal: Optional["AuthContext"],
        title: Any,
        description: Any = None,
        priority: Any = None,
        due_date: Any = None,
    ) -> Result[str]:
        parsed_due = parse_due_date(due_date)

        def checks() -> List[Check]:
            return [
                ("title", is_valid_task_title(title), TITLE_MESSAGE),
                (
                    "description",
                    description is None or is_valid_task_description(description),
                    DESCRIPTION_MESSAGE,
                ),
                ("priority", priority is None or is_valid_priority(priority), PRIORITY_MESSAGE),
                (
                    "due_date",
                    due_date is None or is_valid_due_date(parsed_due, self._clock()),
                    DUE_DATE_MESSAGE,
                ),
            ]

        def action(caller: "AuthContext") -> Result[str]:
            task = self.tasks.create(
                caller.user_id,
                title,
                description=description,
                priority=TaskPriority(priority) if priority is not None else None,
                due_date=parsed_due,
            )
            return Ok(task.id)

        return await self.orchestrator.mutate("createTask", principal, checks, action)

    async def update_task(
        self,
        principal: Optional["AuthContext"],
        task_id: str,
        changes: Mapping[str, Any],
    ) -> Result[None]:
        """Patch the named fields; absent keys stay untouched.

        ``None`` clears description, priority and due_date. Title and
        completed cannot be cleared.
        """

        normalized: Dict[str, Any] = {}

        def checks() -> List[Check]:
            found: List[Check] = [
                (key, False, f"Unknown task field: {key}")
                for key in changes
                if key not in UPDATABLE_FIELDS
            ]
            if "title" in changes:
                found.append(("title", is_valid_task_title(changes["title"]), TITLE_MESSAGE))
            if "description" in changes and changes["description"] is not None:
                found.append(
                    (
                        "description",
                        is_valid_task_description(changes["description"]),
                        DESCRIPTION_MESSAGE,
                    )
                )
            if "priority" in changes and changes["priority"] is not None:
                found.append(
                    ("priority", is_valid_priority(changes["priority"]), PRIORITY_MESSAGE)
                )
            if "due_date" in changes and changes["due_date"] is not None:
                parsed = parse_due_date(changes["due_date"])
                found.append(
                    ("due_date", is_valid_due_date(parsed, self._clock()), DUE_DATE_MESSAGE)
                )
                normalized["due_date"] = parsed
            if "completed" in changes:
                found.append(
                    ("completed", isinstance(changes["completed"], bool), COMPLETED_MESSAGE)
                )
            return found

        def action(caller: "AuthContext") -> Result[None]:
            patch = {key: changes[key] for key in UPDATABLE_FIELDS if key in changes}
            patch.update(normalized)
            if patch.get("priority") is not None:
                patch["priority"] = TaskPriority(patch["priority"])

            def apply(mutation, _task: Task) -> None:
                mutation.update(**patch)

            return self.orchestrator.within_owned(
                self.tasks, task_id, caller.user_id, apply, not_found=TASK_NOT_FOUND
            )

        return await self.orchestrator.mutate("updateTask", principal, checks, action)

    async def toggle_task_complete(
        self, principal: Optional["AuthContext"], task_id: str
    ) -> Result[bool]:
        """Flip the completion flag; returns the new value."""

        def action(caller: "AuthContext") -> Result[bool]:
            return self.orchestrator.within_owned(
                self.tasks,
                task_id,
                caller.user_id,
                lambda mutation, task: mutation.update(completed=not task.completed).completed,
                not_found=TASK_NOT_FOUND,
            )

        return await self.orchestrator.mutate("updateTask", principal, lambda: [], action)

    async def delete_task(self, principal: Optional["AuthContext"], task_id: str) -> Result[None]:
        def action(caller: "AuthContext") -> Result[None]:
            return self.orchestrator.within_owned(
                self.tasks,
                task_id,
                caller.user_id,
                lambda mutation, _task: mutation.delete(),
                not_found=TASK_NOT_FOUND,
            )

        return await self.orchestrator.mutate("deleteTask", principal, lambda: [], action)

    # -- queries ----------------------------------------------------------

    def get_task(self, principal: Optional["AuthContext"], task_id: str) -> Result[Task]:
        return self.orchestrator.query(
            "getTask",
            principal,
            lambda caller: self.orchestrator.read_owned(
                self.tasks.get(task_id), caller.user_id, not_found=TASK_NOT_FOUND
            ),
        )

    def list_tasks(self, principal: Optional["AuthContext"]) -> Result[List[Task]]:
        return self.orchestrator.query(
            "listTasks", principal, lambda caller: Ok(self.tasks.list_by_owner(caller.user_id))
        )

    def list_tasks_by_status(
        self, principal: Optional["AuthContext"], completed: bool
    ) -> Result[List[Task]]:
        def read(caller: "AuthContext") -> Result[List[Task]]:
            if not isinstance(completed, bool):
                return Err(ValidationError(COMPLETED_MESSAGE, field="completed"))
            return Ok(self.tasks.list_by_owner_and_completed(caller.user_id, completed))

        return self.orchestrator.query("listTasksByStatus", principal, read)

    def list_upcoming_tasks(
        self, principal: Optional["AuthContext"], limit: Optional[int] = None
    ) -> Result[List[Task]]:
        def read(caller: "AuthContext") -> Result[List[Task]]:
            checked = _limit_check(limit)
            if isinstance(checked, Err):
                return checked
            return Ok(self.tasks.list_upcoming(caller.user_id, limit))

        return self.orchestrator.query("listUpcomingTasks", principal, read)

    def list_recent_tasks(
        self, principal: Optional["AuthContext"], limit: Optional[int] = None
    ) -> Result[List[Task]]:
        def read(caller: "AuthContext") -> Result[List[Task]]:
            checked = _limit_check(limit)
            if isinstance(checked, Err):
                return checked
            return Ok(self.tasks.list_recent(caller.user_id, limit or self.recent_limit))

        return self.orchestrator.query("listRecentTasks", principal, read)

    def task_stats(self, principal: Optional["AuthContext"]) -> Result[TaskStats]:
        def read(caller: "AuthContext") -> Result[TaskStats]:
            total = self.tasks.count_by_owner(caller.user_id)
            completed = self.tasks.count_completed(caller.user_id)
            return Ok(
                TaskStats(
                    total=total,
                    completed=completed,
                    pending=total - completed,
                    completion_rate=completion_rate(completed, total),
                )
            )

        return self.orchestrator.query("taskStats", principal, read)
