from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Mapping, Optional, Tuple

import redis.asyncio as aioredis


class RedisCounterStore:
    """Rate-limit counters shared by every process pointed at one Redis."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Atomic compare-and-set on the version field; version 0 means "absent"
    _CAS_SCRIPT = """
local key = KEYS[1]
local expected = tonumber(ARGV[1])
local state = ARGV[2]
local ttl = tonumber(ARGV[3])

local current = tonumber(redis.call('HGET', key, 'version'))
if current == nil then
  current = 0
end

if current ~= expected then
  return 0
end

redis.call('HSET', key, 'state', state, 'version', current + 1)
redis.call('PEXPIRE', key, math.max(ttl, 1))
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "rate",
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._cas = self.client.register_script(self._CAS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _normalize_key(self, key: str) -> str:
        """Hash the logical key so caller-supplied ids cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{self.prefix}:{digest}"

    async def get(self, key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        state, version = await self.client.hmget(self._normalize_key(key), "state", "version")
        if state is None or version is None:
            return None
        return json.loads(state), int(version)

    async def compare_and_set(
        self,
        key: str,
        expected_version: Optional[int],
        state: Mapping[str, Any],
        ttl_ms: int,
    ) -> bool:
        swapped = await self._cas(
            keys=[self._normalize_key(key)],
            args=[expected_version or 0, json.dumps(dict(state)), int(ttl_ms)],
        )
        return bool(int(swapped))

    async def close(self) -> None:
        await self.client.aclose()
