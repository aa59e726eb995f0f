"""Per-key admission control.

Two algorithms share one entry point, :meth:`RateLimiter.consume`:

* token bucket: ``capacity`` tokens refilled lazily at ``rate / period_ms``
  per millisecond. Unseen keys start full. Denials write nothing.
* fixed window: at most ``rate`` units per aligned window of ``period_ms``
  starting at the key's first request.

State lives in a :class:`CounterStore`. A per-key ``asyncio.Lock`` linearizes
callers in this process; a versioned compare-and-set linearizes processes
sharing the store.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

from taskflow.config import RateLimitConfig, RateLimitKind
from taskflow.logging import get_logger
from taskflow.storage.errors import StoreConflict

logger = get_logger(__name__)

Clock = Callable[[], int]
State = Dict[str, Any]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitKey:
    operation: str
    subject: str

    @property
    def storage_key(self) -> str:
        # JSON keeps the pair unambiguous whatever the subject contains
        return json.dumps([self.operation, self.subject])


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int
    remaining: int


class CounterStore(Protocol):
    async def get(self, key: str) -> Optional[Tuple[State, int]]:
        ...

    async def compare_and_set(
        self,
        key: str,
        expected_version: Optional[int],
        state: Mapping[str, Any],
        ttl_ms: int,
    ) -> bool:
        ...


def token_bucket_step(
    config: RateLimitConfig, state: Optional[State], now: int, cost: int
) -> Tuple[RateLimitDecision, Optional[State]]:
    """Return the decision and the state to write (``None`` means no write)."""
    capacity = config.limit
    rate = config.refill_rate_per_ms
    if state is None:
        tokens, last = float(capacity), now
    else:
        tokens, last = float(state["tokens"]), int(state["last_refill_at"])
    elapsed = max(0, now - last)
    tokens = min(float(capacity), tokens + elapsed * rate)
    if tokens >= cost:
        tokens -= cost
        new_state = {
            "algorithm": RateLimitKind.TOKEN_BUCKET.value,
            "tokens": tokens,
            # never move backwards if another process wrote with a later clock
            "last_refill_at": max(now, last),
        }
        return RateLimitDecision(True, 0, int(math.floor(tokens))), new_state
    retry_after = int(math.ceil((cost - tokens) / rate))
    return RateLimitDecision(False, max(1, retry_after), int(math.floor(tokens))), None


def fixed_window_step(
    config: RateLimitConfig, state: Optional[State], now: int, cost: int
) -> Tuple[RateLimitDecision, Optional[State]]:
    """Return the decision and the state to write (``None`` means no write)."""
    limit = config.limit
    period = config.period_ms
    if state is None:
        window_start, count = now, 0
    else:
        window_start, count = int(state["window_start"]), int(state["count"])
    if now - window_start >= period:
        window_start += period * ((now - window_start) // period)
        count = 0
    if count + cost <= limit:
        count += cost
        new_state = {
            "algorithm": RateLimitKind.FIXED_WINDOW.value,
            "window_start": window_start,
            "count": count,
        }
        return RateLimitDecision(True, 0, limit - count), new_state
    retry_after = window_start + period - now
    return RateLimitDecision(False, max(1, retry_after), max(0, limit - count)), None


_STEPS = {
    RateLimitKind.TOKEN_BUCKET: token_bucket_step,
    RateLimitKind.FIXED_WINDOW: fixed_window_step,
}


class RateLimiter:
    """Admission control over a shared counter store."""

    def __init__(
        self,
        store: CounterStore,
        configs: Mapping[str, RateLimitConfig],
        *,
        clock: Optional[Clock] = None,
        max_attempts: int = 5,
        idle_multiplier: int = 2,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._configs = dict(configs)
        self._clock = clock or wall_clock_ms
        self.max_attempts = max_attempts
        self.idle_multiplier = max(1, idle_multiplier)
        # Entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[RateLimitKey, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def configs(self) -> Dict[str, RateLimitConfig]:
        return dict(self._configs)

    def config_for(self, operation: str) -> RateLimitConfig:
        try:
            return self._configs[operation]
        except KeyError:
            raise ValueError(f"no rate limit configured for {operation!r}") from None

    def _lock_for(self, key: RateLimitKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _ttl_ms(self, config: RateLimitConfig) -> int:
        return config.full_cycle_ms * self.idle_multiplier

    async def consume(self, key: RateLimitKey, cost: int = 1) -> RateLimitDecision:
        """Charge ``cost`` units to ``key`` if its budget allows it.

        Raises ``ValueError`` when ``cost`` can never fit the configured
        capacity or limit, and ``StoreConflict`` when the store's
        compare-and-set is lost ``max_attempts`` times in a row.
        """

        config = self.config_for(key.operation)
        if cost < 1:
            raise ValueError("cost must be a positive integer")
        if cost > config.limit:
            raise ValueError(
                f"cost {cost} exceeds the {config.kind.value} limit of {config.limit} "
                f"for {key.operation!r}"
            )
        step = _STEPS[config.kind]
        storage_key = key.storage_key
        lock = self._lock_for(key)
        async with lock:
            for attempt in range(1, self.max_attempts + 1):
                current = await self._store.get(storage_key)
                state, version = current if current is not None else (None, None)
                if state is not None and state.get("algorithm") != config.kind.value:
                    # Config switched algorithms; start this key over
                    state = None
                decision, new_state = step(config, state, self._clock(), cost)
                if new_state is None:
                    return decision
                if await self._store.compare_and_set(
                    storage_key, version, new_state, self._ttl_ms(config)
                ):
                    return decision
                logger.debug(
                    "rate_limit_cas_retry", operation=key.operation, attempt=attempt
                )
        logger.warning(
            "rate_limit_store_conflict",
            operation=key.operation,
            attempts=self.max_attempts,
        )
        raise StoreConflict(storage_key, self.max_attempts)
