"""Pure input checks. No storage access, no side effects."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Tuple

from taskflow.service.errors import ValidationError
from taskflow.service.result import Err, Ok, Result
from taskflow.storage.models import MessageRole, TaskPriority, ThreadStatus

TASK_TITLE_MAX = 200
TASK_DESCRIPTION_MAX = 2000
THREAD_TITLE_MAX = 100
MESSAGE_CONTENT_MAX = 5000
USER_ID_MAX = 100
PASSWORD_MIN = 8

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

Check = Tuple[str, bool, str]


def _bounded_text(value: Any, max_len: int) -> bool:
    return isinstance(value, str) and len(value.strip()) > 0 and len(value) <= max_len


def is_valid_task_title(title: Any) -> bool:
    return _bounded_text(title, TASK_TITLE_MAX)


def is_valid_thread_title(title: Any) -> bool:
    return _bounded_text(title, THREAD_TITLE_MAX)


def is_valid_task_description(description: Any) -> bool:
    return isinstance(description, str) and len(description) <= TASK_DESCRIPTION_MAX


def is_valid_message_content(content: Any) -> bool:
    return _bounded_text(content, MESSAGE_CONTENT_MAX)


def _is_member(value: Any, enum_cls) -> bool:
    if isinstance(value, enum_cls):
        return True
    return isinstance(value, str) and value in tuple(member.value for member in enum_cls)


def is_valid_priority(priority: Any) -> bool:
    return _is_member(priority, TaskPriority)


def is_valid_thread_status(status: Any) -> bool:
    return _is_member(status, ThreadStatus)


def is_valid_message_role(role: Any) -> bool:
    return _is_member(role, MessageRole)


def is_valid_due_date(due_date: Any, now: Optional[datetime] = None) -> bool:
    """True when ``due_date`` is strictly after ``now`` (naive values are UTC)."""
    if not isinstance(due_date, datetime):
        return False
    current = now or datetime.now(timezone.utc)
    return _as_utc(due_date) > _as_utc(current)


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(_EMAIL_PATTERN.match(email))


def is_valid_user_id(user_id: Any) -> bool:
    return isinstance(user_id, str) and 0 < len(user_id) <= USER_ID_MAX


def is_valid_password(password: Any) -> bool:
    return isinstance(password, str) and len(password) >= PASSWORD_MIN


def sanitize_input(value: str) -> str:
    """Trim and drop angle brackets."""
    return value.strip().replace("<", "").replace(">", "")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_due_date(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string, epoch milliseconds or datetime.

    Returns an aware UTC datetime, or ``None`` when the value is missing or
    cannot be parsed.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_validation_error(field: str, message: str) -> str:
    return f"Validation error on {field}: {message}"


def first_failure(checks: Iterable[Check]) -> Result[None]:
    """Return ``Err`` for the first ``(field, passed, message)`` that failed."""
    for field, passed, message in checks:
        if not passed:
            return Err(ValidationError(message, field=field))
    return Ok(None)


def is_valid_limit(limit: Any) -> bool:
    """``None`` (no limit) or a positive integer."""
    if limit is None:
        return True
    return isinstance(limit, int) and not isinstance(limit, bool) and limit >= 1
