from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for request failures mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input violated a validation rule (400). Carries the failing field."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        if field is not None:
            self.detail.setdefault("field", field)


class AuthenticationError(ServiceError):
    """No valid caller identity (401)."""

    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Caller does not own the targeted record (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Targeted record does not exist (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate signup (409)."""

    status_code = 409
    error_code = "conflict"


class RateLimitError(ServiceError):
    """Admission denied by the rate limiter (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_ms: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms
        self.detail.setdefault("retry_after_ms", retry_after_ms)


class ServerError(ServiceError):
    """Internal server error (500)."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServerError",
]
