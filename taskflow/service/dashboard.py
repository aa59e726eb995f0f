from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from taskflow.service.errors import ValidationError
from taskflow.service.orchestrator import Orchestrator
from taskflow.service.result import Err, Ok, Result
from taskflow.service.validation import is_valid_limit
from taskflow.storage.common import utcnow
from taskflow.storage.repositories import MessageRepository, TaskRepository, ThreadRepository

if TYPE_CHECKING:
    from taskflow.service.auth import AuthContext


@dataclass(frozen=True)
class OwnedCollections:
    """The caller-scoped collections the dashboard aggregates over."""

    tasks: TaskRepository
    threads: ThreadRepository
    messages: MessageRepository

    primary: str = "tasks"

    def counts(self, owner_id: str) -> Dict[str, int]:
        return {
            "tasks": self.tasks.count_by_owner(owner_id),
            "threads": self.threads.count_by_owner(owner_id),
            "messages": self.messages.count_by_owner(owner_id),
        }


@dataclass
class DashboardSummary:
    total_records: int
    per_table: Dict[str, int]
    primary_table_count: int


@dataclass
class RecentItem:
    id: str
    name: str
    status: str
    updated_at: Optional[datetime]


@dataclass
class PeriodCounts:
    created: int
    completed: int


@dataclass
class ProductivityMetrics:
    today: PeriodCounts
    this_week: PeriodCounts
    overdue: int


def summarize(collections: OwnedCollections, owner_id: str) -> DashboardSummary:
    per_table = collections.counts(owner_id)
    return DashboardSummary(
        total_records=sum(per_table.values()),
        per_table=per_table,
        primary_table_count=per_table.get(collections.primary, 0),
    )


class DashboardEndpoints:
    def __init__(
        self,
        orchestrator: Orchestrator,
        collections: OwnedCollections,
        *,
        recent_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.orchestrator = orchestrator
        self.collections = collections
        self.recent_limit = recent_limit
        self._clock = clock

    def summary(self, principal: Optional["AuthContext"]) -> Result[DashboardSummary]:
        return self.orchestrator.query(
            "dashboardSummary",
            principal,
            lambda caller: Ok(summarize(self.collections, caller.user_id)),
        )

    def recent(
        self, principal: Optional["AuthContext"], limit: Optional[int] = None
    ) -> Result[List[RecentItem]]:
        def read(caller: "AuthContext") -> Result[List[RecentItem]]:
            if not is_valid_limit(limit):
                return Err(ValidationError("Limit must be a positive integer", field="limit"))
            tasks = self.collections.tasks.list_recent(caller.user_id, limit or self.recent_limit)
            return Ok(
                [
                    RecentItem(
                        id=task.id,
                        name=task.title or "Untitled",
                        status="completed" if task.completed else "pending",
                        updated_at=task.updated_at,
                    )
                    for task in tasks
                ]
            )

        return self.orchestrator.query("dashboardRecent", principal, read)

    def productivity(self, principal: Optional["AuthContext"]) -> Result[ProductivityMetrics]:
        """Created/completed counts over the last day and week, plus overdue."""

        def read(caller: "AuthContext") -> Result[ProductivityMetrics]:
            now = self._clock()
            tasks = self.collections.tasks
            this_week = tasks.list_created_since(caller.user_id, now - timedelta(days=7))
            day_ago = now - timedelta(days=1)
            today = [task for task in this_week if task.created_at >= day_ago]
            overdue = [
                task for task in tasks.list_due_before(caller.user_id, now) if not task.completed
            ]
            return Ok(
                ProductivityMetrics(
                    today=PeriodCounts(
                        created=len(today),
                        completed=sum(1 for task in today if task.completed),
                    ),
                    this_week=PeriodCounts(
                        created=len(this_week),
                        completed=sum(1 for task in this_week if task.completed),
                    ),
                    overdue=len(overdue),
                )
            )

        return self.orchestrator.query("dashboardProductivity", principal, read)
