from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskflow.logging import get_logger

logger = get_logger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS


class RateLimitKind(str, Enum):
    """Admission algorithms understood by the rate limiter."""

    TOKEN_BUCKET = "token bucket"
    FIXED_WINDOW = "fixed window"


class RateLimitConfig(BaseModel):
    """Budget for one operation category.

    ``rate`` requests are granted per ``period_ms``. Token buckets may burst up
    to ``capacity`` (defaults to ``rate``); fixed windows treat ``rate`` as the
    per-window limit and ignore ``capacity``.
    """

    kind: RateLimitKind
    rate: int = Field(..., gt=0)
    period_ms: int = Field(..., gt=0)
    capacity: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    @property
    def limit(self) -> int:
        if self.kind is RateLimitKind.FIXED_WINDOW:
            return self.rate
        return self.capacity if self.capacity is not None else self.rate

    @property
    def refill_rate_per_ms(self) -> float:
        return self.rate / self.period_ms

    @property
    def full_cycle_ms(self) -> int:
        """Time for the state to return to its initial value when idle."""
        if self.kind is RateLimitKind.FIXED_WINDOW:
            return self.period_ms
        return int(self.limit / self.refill_rate_per_ms) + 1


DEFAULT_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    # Task operations
    "createTask": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=30, period_ms=MINUTE_MS, capacity=5
    ),
    "updateTask": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=60, period_ms=MINUTE_MS, capacity=10
    ),
    "deleteTask": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=20, period_ms=MINUTE_MS, capacity=3
    ),
    # Assistant threads and messages
    "sendMessage": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=20, period_ms=MINUTE_MS, capacity=3
    ),
    "createThread": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=10, period_ms=MINUTE_MS, capacity=2
    ),
    "updateThread": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=30, period_ms=MINUTE_MS, capacity=5
    ),
    "deleteThread": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=10, period_ms=MINUTE_MS, capacity=2
    ),
    "deleteMessage": RateLimitConfig(
        kind=RateLimitKind.TOKEN_BUCKET, rate=20, period_ms=MINUTE_MS, capacity=3
    ),
    # Auth operations (stricter, hard windows)
    "signup": RateLimitConfig(kind=RateLimitKind.FIXED_WINDOW, rate=5, period_ms=HOUR_MS),
    "login": RateLimitConfig(kind=RateLimitKind.FIXED_WINDOW, rate=10, period_ms=HOUR_MS),
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read once at process start."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskflow", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/taskflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT after each change.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskflow", "JWT_ISSUER")
    jwt_audience: str = env_field("taskflow-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL in minutes (30 days by default).",
    )
    rate_limits_file: str | None = env_field(
        None,
        "RATE_LIMITS_FILE",
        description="JSON file of operation -> {kind, rate, period_ms, capacity} overrides.",
    )
    rate_limit_idle_multiplier: int = env_field(
        2,
        "RATE_LIMIT_IDLE_MULTIPLIER",
        description="Idle rate-limit state expires after this many refill cycles.",
    )
    recent_tasks_limit: int = env_field(10, "RECENT_TASKS_LIMIT")
    dashboard_recent_limit: int = env_field(5, "DASHBOARD_RECENT_LIMIT")
    messages_page_size: int = env_field(50, "MESSAGES_PAGE_SIZE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_disables(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/taskflow"))
        secret_path = fs_root / ".jwt_secret"
        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def load_rate_limits(settings: Settings) -> Dict[str, RateLimitConfig]:
    """Return the default budgets merged with the optional override file."""
    configs: Dict[str, RateLimitConfig] = dict(DEFAULT_RATE_LIMITS)
    if not settings.rate_limits_file:
        return configs
    path = Path(settings.rate_limits_file)
    raw: Mapping[str, Any] = json.loads(path.read_text())
    if not isinstance(raw, dict):
        raise ValueError(f"rate limit file {path} must contain a JSON object")
    for operation, spec in raw.items():
        configs[operation] = RateLimitConfig.model_validate(spec)
    logger.info(
        "rate_limits_loaded",
        path=str(path),
        overridden=sorted(raw.keys()),
        operations=len(configs),
    )
    return configs


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
