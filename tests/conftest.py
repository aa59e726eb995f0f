import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="taskflow_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate-limit counters in process memory
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskflow.config import DEFAULT_RATE_LIMITS  # noqa: E402
from taskflow.service.auth import AuthContext  # noqa: E402
from taskflow.service.dashboard import DashboardEndpoints, OwnedCollections  # noqa: E402
from taskflow.service.orchestrator import Orchestrator  # noqa: E402
from taskflow.service.rate_limit import RateLimiter  # noqa: E402
from taskflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from taskflow.service.tasks import TaskEndpoints  # noqa: E402
from taskflow.service.threads import MessageEndpoints, ThreadEndpoints  # noqa: E402
from taskflow.storage.memory import MemoryCounterStore, MemoryStore  # noqa: E402
from taskflow.storage.repositories import (  # noqa: E402
    MessageRepository,
    TaskRepository,
    ThreadRepository,
)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Millisecond clock advanced by hand.

    ``utc()`` reads the same instant as an aware datetime so repositories and
    the rate limiter share one timeline.
    """

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def utc(self) -> datetime:
        return datetime.fromtimestamp(self.now / 1000, tz=timezone.utc)

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@dataclass
class Kernel:
    store: MemoryStore
    counters: MemoryCounterStore
    limiter: RateLimiter
    orchestrator: Orchestrator
    tasks: TaskEndpoints
    threads: ThreadEndpoints
    messages: MessageEndpoints
    dashboard: DashboardEndpoints
    task_repo: TaskRepository
    thread_repo: ThreadRepository
    message_repo: MessageRepository


@pytest.fixture
def kernel(tmp_path, clock) -> Kernel:
    """Endpoint sets over a fresh memory store, all driven by ``clock``."""
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    counters = MemoryCounterStore(clock=clock)
    limiter = RateLimiter(counters, DEFAULT_RATE_LIMITS, clock=clock)
    orchestrator = Orchestrator(limiter)
    task_repo = TaskRepository(store, clock=clock.utc)
    thread_repo = ThreadRepository(store, clock=clock.utc)
    message_repo = MessageRepository(store, clock=clock.utc)
    return Kernel(
        store=store,
        counters=counters,
        limiter=limiter,
        orchestrator=orchestrator,
        tasks=TaskEndpoints(orchestrator, task_repo, clock=clock.utc),
        threads=ThreadEndpoints(orchestrator, thread_repo, message_repo),
        messages=MessageEndpoints(orchestrator, thread_repo, message_repo),
        dashboard=DashboardEndpoints(
            orchestrator,
            OwnedCollections(tasks=task_repo, threads=thread_repo, messages=message_repo),
            clock=clock.utc,
        ),
        task_repo=task_repo,
        thread_repo=thread_repo,
        message_repo=message_repo,
    )


@pytest.fixture
def alice() -> AuthContext:
    return AuthContext(user_id="user-alice")


@pytest.fixture
def bob() -> AuthContext:
    return AuthContext(user_id="user-bob")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
