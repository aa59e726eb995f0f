from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from taskflow.api.schemas import (
    AuthResponse,
    CreatedResponse,
    CreateTaskRequest,
    CreateThreadRequest,
    DashboardSummaryResponse,
    DeletedResponse,
    Envelope,
    LoginRequest,
    MessageListResponse,
    MessageResponse,
    PeriodCountsResponse,
    ProductivityResponse,
    RecentItemResponse,
    SendMessageRequest,
    SignupRequest,
    TaskListResponse,
    TaskResponse,
    TaskStatsResponse,
    ThreadListResponse,
    ThreadResponse,
    ToggleResponse,
    UpdateTaskRequest,
)
from taskflow.service.auth import AuthContext, TokenGrant
from taskflow.service.result import unwrap
from taskflow.service.runtime import get_runtime
from taskflow.storage.models import Message, Task, Thread

router = APIRouter(prefix="/v1")


async def get_principal(authorization: Optional[str] = Header(None)) -> Optional[AuthContext]:
    """Resolve the bearer token, leaving rejection of anonymous callers to the pipeline."""
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _client_id(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _auth_payload(grant: TokenGrant) -> AuthResponse:
    return AuthResponse(
        user_id=grant.user_id,
        access_token=grant.access_token,
        token_type=grant.token_type,
        expires_in=grant.expires_in,
    )


def _task_payload(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        owner_id=task.owner_id,
        title=task.title,
        description=task.description,
        completed=task.completed,
        priority=task.priority.value if task.priority else None,
        due_date=task.due_date,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _tasks_payload(tasks: List[Task]) -> TaskListResponse:
    return TaskListResponse(items=[_task_payload(task) for task in tasks])


def _thread_payload(thread: Thread) -> ThreadResponse:
    return ThreadResponse(
        id=thread.id,
        owner_id=thread.owner_id,
        title=thread.title,
        status=thread.status.value,
        created_at=thread.created_at,
        updated_at=thread.updated_at,
    )


def _message_payload(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        thread_id=message.thread_id,
        owner_id=message.owner_id,
        role=message.role.value,
        content=message.content,
        created_at=message.created_at,
    )


# -- auth --------------------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Create an account and return an access token.

    Raises:
        ValidationError: malformed email or short password.
        ConflictError: the email is already registered.
        RateLimitError: too many signups from this client.
    """
    runtime = get_runtime()
    grant = unwrap(await runtime.auth.signup(body.email, body.password, _client_id(request)))
    return Envelope(status="ok", data=_auth_payload(grant))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    grant = unwrap(await runtime.auth.login(body.email, body.password, _client_id(request)))
    return Envelope(status="ok", data=_auth_payload(grant))


# -- tasks -------------------------------------------------------------------


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(
    body: CreateTaskRequest, principal: Optional[AuthContext] = Depends(get_principal)
):
    runtime = get_runtime()
    task_id = unwrap(
        await runtime.tasks.create_task(
            principal,
            body.title,
            description=body.description,
            priority=body.priority,
            due_date=body.due_date,
        )
    )
    return Envelope(status="ok", data=CreatedResponse(id=task_id))


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    completed: Optional[bool] = Query(None),
    principal: Optional[AuthContext] = Depends(get_principal),
):
    runtime = get_runtime()
    if completed is None:
        tasks = unwrap(runtime.tasks.list_tasks(principal))
    else:
        tasks = unwrap(runtime.tasks.list_tasks_by_status(principal, completed))
    return Envelope(status="ok", data=_tasks_payload(tasks))


@router.get("/tasks/upcoming", response_model=Envelope, tags=["tasks"])
async def list_upcoming_tasks(
    limit: Optional[int] = Query(None),
    principal: Optional[AuthContext] = Depends(get_principal),
):
    """Tasks that carry a due date, soonest first."""
    runtime = get_runtime()
    tasks = unwrap(runtime.tasks.list_upcoming_tasks(principal, limit))
    return Envelope(status="ok", data=_tasks_payload(tasks))


@router.get("/tasks/recent", response_model=Envelope, tags=["tasks"])
async def list_recent_tasks(
    limit: Optional[int] = Query(None),
    principal: Optional[AuthContext] = Depends(get_principal),
):
    runtime = get_runtime()
    tasks = unwrap(runtime.tasks.list_recent_tasks(principal, limit))
    return Envelope(status="ok", data=_tasks_payload(tasks))


@router.get("/tasks/stats", response_model=Envelope, tags=["tasks"])
async def task_stats(principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    stats = unwrap(runtime.tasks.task_stats(principal))
    return Envelope(
        status="ok",
        data=TaskStatsResponse(
            total=stats.total,
            completed=stats.completed,
            pending=stats.pending,
            completion_rate=stats.completion_rate,
        ),
    )


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(task_id: str, principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    task = unwrap(runtime.tasks.get_task(principal, task_id))
    return Envelope(status="ok", data=_task_payload(task))


@router.patch("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    task_id: str,
    body: UpdateTaskRequest,
    principal: Optional[AuthContext] = Depends(get_principal),
):
    """Apply a partial update and return the stored task.

    Only keys present in the body are applied; an explicit ``null`` clears
    description, priority or due_date.
    """
    runtime = get_runtime()
    unwrap(await runtime.tasks.update_task(principal, task_id, body.model_dump(exclude_unset=True)))
    task = unwrap(runtime.tasks.get_task(principal, task_id))
    return Envelope(status="ok", data=_task_payload(task))


@router.post("/tasks/{task_id}/toggle", response_model=Envelope, tags=["tasks"])
async def toggle_task(task_id: str, principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    completed = unwrap(await runtime.tasks.toggle_task_complete(principal, task_id))
    return Envelope(status="ok", data=ToggleResponse(id=task_id, completed=completed))


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(task_id: str, principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    unwrap(await runtime.tasks.delete_task(principal, task_id))
    return Envelope(status="ok", data=DeletedResponse(id=task_id))


# -- threads and messages ----------------------------------------------------


@router.post("/threads", response_model=Envelope, status_code=201, tags=["threads"])
async def create_thread(
    body: CreateThreadRequest, principal: Optional[AuthContext] = Depends(get_principal)
):
    runtime = get_runtime()
    thread_id = unwrap(await runtime.threads.create_thread(principal, body.title))
    return Envelope(status="ok", data=CreatedResponse(id=thread_id))


@router.get("/threads", response_model=Envelope, tags=["threads"])
async def list_threads(
    status: Optional[str] = Query(None),
    principal: Optional[AuthContext] = Depends(get_principal),
):
    runtime = get_runtime()
    if status is None:
        threads = unwrap(runtime.threads.list_threads(principal))
    else:
        threads = unwrap(runtime.threads.list_threads_by_status(principal, status))
    return Envelope(
        status="ok", data=ThreadListResponse(items=[_thread_payload(t) for t in threads])
    )


@router.get("/threads/{thread_id}", response_model=Envelope, tags=["threads"])
async def get_thread(thread_id: str, principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    thread = unwrap(runtime.threads.get_thread(principal, thread_id))
    return Envelope(status="ok", data=_thread_payload(thread))


@router.post("/threads/{thread_id}/archive", response_model=Envelope, tags=["threads"])
async def archive_thread(
    thread_id: str, principal: Optional[AuthContext] = Depends(get_principal)
):
    runtime = get_runtime()
    unwrap(await runtime.threads.archive_thread(principal, thread_id))
    thread = unwrap(runtime.threads.get_thread(principal, thread_id))
    return Envelope(status="ok", data=_thread_payload(thread))


@router.delete("/threads/{thread_id}", response_model=Envelope, tags=["threads"])
async def delete_thread(thread_id: str, principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    removed = unwrap(await runtime.threads.delete_thread(principal, thread_id))
    return Envelope(
        status="ok", data=DeletedResponse(id=thread_id, messages_deleted=removed)
    )


@router.post(
    "/threads/{thread_id}/messages", response_model=Envelope, status_code=201, tags=["threads"]
)
async def send_message(
    thread_id: str,
    body: SendMessageRequest,
    principal: Optional[AuthContext] = Depends(get_principal),
):
    runtime = get_runtime()
    message_id = unwrap(
        await runtime.messages.send_message(principal, thread_id, body.content, body.role)
    )
    return Envelope(status="ok", data=CreatedResponse(id=message_id))


@router.get("/threads/{thread_id}/messages", response_model=Envelope, tags=["threads"])
async def list_messages(
    thread_id: str,
    limit: Optional[int] = Query(None),
    principal: Optional[AuthContext] = Depends(get_principal),
):
    runtime = get_runtime()
    messages = unwrap(runtime.messages.list_messages(principal, thread_id, limit))
    return Envelope(
        status="ok", data=MessageListResponse(items=[_message_payload(m) for m in messages])
    )


@router.delete("/messages/{message_id}", response_model=Envelope, tags=["threads"])
async def delete_message(
    message_id: str, principal: Optional[AuthContext] = Depends(get_principal)
):
    runtime = get_runtime()
    unwrap(await runtime.messages.delete_message(principal, message_id))
    return Envelope(status="ok", data=DeletedResponse(id=message_id))


# -- dashboard ---------------------------------------------------------------


@router.get("/dashboard/summary", response_model=Envelope, tags=["dashboard"])
async def dashboard_summary(principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    summary = unwrap(runtime.dashboard.summary(principal))
    return Envelope(
        status="ok",
        data=DashboardSummaryResponse(
            total_records=summary.total_records,
            per_table=summary.per_table,
            primary_table_count=summary.primary_table_count,
        ),
    )


@router.get("/dashboard/recent", response_model=Envelope, tags=["dashboard"])
async def dashboard_recent(
    limit: Optional[int] = Query(None),
    principal: Optional[AuthContext] = Depends(get_principal),
):
    runtime = get_runtime()
    items = unwrap(runtime.dashboard.recent(principal, limit))
    return Envelope(
        status="ok",
        data={
            "items": [
                RecentItemResponse(
                    id=item.id, name=item.name, status=item.status, updated_at=item.updated_at
                )
                for item in items
            ]
        },
    )


@router.get("/dashboard/productivity", response_model=Envelope, tags=["dashboard"])
async def dashboard_productivity(principal: Optional[AuthContext] = Depends(get_principal)):
    runtime = get_runtime()
    metrics = unwrap(runtime.dashboard.productivity(principal))
    return Envelope(
        status="ok",
        data=ProductivityResponse(
            today=PeriodCountsResponse(
                created=metrics.today.created, completed=metrics.today.completed
            ),
            this_week=PeriodCountsResponse(
                created=metrics.this_week.created, completed=metrics.this_week.completed
            ),
            overdue=metrics.overdue,
        ),
    )
