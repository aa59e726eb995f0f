from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskflow.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

DueDateInput = Union[int, float, str, None]


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# -- requests ----------------------------------------------------------------


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class CreateTaskRequest(BaseModel):
    title: str
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: DueDateInput = Field(
        default=None, description="ISO-8601 timestamp or epoch milliseconds"
    )


class UpdateTaskRequest(BaseModel):
    """Only fields present in the body are changed; null clears optional ones."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: DueDateInput = None
    completed: Optional[bool] = None


class CreateThreadRequest(BaseModel):
    title: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str
    role: str = "user"


# -- responses ---------------------------------------------------------------


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class CreatedResponse(BaseModel):
    id: str


class TaskResponse(BaseModel):
    id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    completed: bool
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TaskListResponse(BaseModel):
    items: List[TaskResponse]


class ToggleResponse(BaseModel):
    id: str
    completed: bool


class TaskStatsResponse(BaseModel):
    total: int
    completed: int
    pending: int
    completion_rate: int


class ThreadResponse(BaseModel):
    id: str
    owner_id: str
    title: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime


class ThreadListResponse(BaseModel):
    items: List[ThreadResponse]


class MessageResponse(BaseModel):
    id: str
    thread_id: str
    owner_id: str
    role: str
    content: str
    created_at: datetime


class MessageListResponse(BaseModel):
    items: List[MessageResponse]


class DeletedResponse(BaseModel):
    id: str
    deleted: bool = True
    messages_deleted: Optional[int] = None


class DashboardSummaryResponse(BaseModel):
    total_records: int
    per_table: Dict[str, int]
    primary_table_count: int


class RecentItemResponse(BaseModel):
    id: str
    name: str
    status: str
    updated_at: Optional[datetime] = None


class PeriodCountsResponse(BaseModel):
    created: int
    completed: int


class ProductivityResponse(BaseModel):
    today: PeriodCountsResponse
    this_week: PeriodCountsResponse
    overdue: int
