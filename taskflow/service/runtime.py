from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from taskflow.config import get_settings, load_rate_limits, reset_settings_cache
from taskflow.logging import get_logger
from taskflow.service.auth import AuthService
from taskflow.service.dashboard import DashboardEndpoints, OwnedCollections
from taskflow.service.orchestrator import Orchestrator
from taskflow.service.ownership import OwnershipGuard
from taskflow.service.rate_limit import RateLimiter
from taskflow.service.tasks import TaskEndpoints
from taskflow.service.threads import MessageEndpoints, ThreadEndpoints
from taskflow.storage.memory import MemoryCounterStore, MemoryStore
from taskflow.storage.postgres import PostgresStore
from taskflow.storage.redis_cache import RedisCounterStore
from taskflow.storage.repositories import (
    MessageRepository,
    TaskRepository,
    ThreadRepository,
    UserRepository,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=self.settings.persist_memory_store,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.counters: Union[RedisCounterStore, MemoryCounterStore, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                self.counters = counters
            except Exception as exc:
                redis_error = exc
                self.counters = None

        self.redis_enabled = self.counters is not None
        if self.counters is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process only."
                ),
                mode=fallback_mode,
            )
            self.counters = MemoryCounterStore()

        self.rate_limits = load_rate_limits(self.settings)
        self.limiter = RateLimiter(
            self.counters,
            self.rate_limits,
            idle_multiplier=self.settings.rate_limit_idle_multiplier,
        )
        self.orchestrator = Orchestrator(self.limiter, OwnershipGuard())

        self.users = UserRepository(self.store)
        tasks = TaskRepository(self.store)
        threads = ThreadRepository(self.store)
        messages = MessageRepository(self.store)

        self.auth = AuthService(self.users, self.orchestrator, self.settings)
        self.tasks = TaskEndpoints(
            self.orchestrator, tasks, recent_limit=self.settings.recent_tasks_limit
        )
        self.threads = ThreadEndpoints(self.orchestrator, threads, messages)
        self.messages = MessageEndpoints(
            self.orchestrator, threads, messages, page_size=self.settings.messages_page_size
        )
        self.dashboard = DashboardEndpoints(
            self.orchestrator,
            OwnedCollections(tasks=tasks, threads=threads, messages=messages),
            recent_limit=self.settings.dashboard_recent_limit,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            redis_enabled=self.redis_enabled,
            rate_limited_operations=sorted(self.rate_limits),
        )

    async def aclose(self) -> None:
        """Release pooled connections held by the store and counter store."""
        self.store.close()
        if self.counters is not None:
            await self.counters.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_previous(previous: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.aclose())
    else:
        loop.create_task(previous.aclose())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_previous(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
