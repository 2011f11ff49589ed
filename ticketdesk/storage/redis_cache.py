from __future__ import annotations

import hashlib
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed sliding-window counters shared by every API instance."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic prune + record + count over a sorted set scored in milliseconds
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local member = ARGV[3]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
redis.call('ZADD', key, now, member)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
redis.call('PEXPIRE', key, window)
return {count, oldest[2]}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        namespace: str = "ticketdesk",
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared counters."""
        # A short-lived sync client avoids binding the async pool to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _normalize_rate_key(self, key: str) -> str:
        """Hash the logical key so client-controlled parts cannot inject delimiters."""
        endpoint_class, _, subject = key.partition(":")
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"{self.namespace}:rate:{endpoint_class}:{digest}"

    async def record_hit(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float, str]:
        """Record one hit and return ``(hits_in_window, oldest_hit_ts, hit_id)``."""
        hit_id = uuid.uuid4().hex
        now_ms = int(now * 1000)
        count, oldest = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, int(window_seconds * 1000), hit_id],
        )
        oldest_ms = float(oldest) if oldest is not None else float(now_ms)
        return int(count), oldest_ms / 1000.0, hit_id

    async def release_hit(self, key: str, hit_id: str) -> None:
        await self.client.zrem(self._normalize_rate_key(key), hit_id)

    async def reset(self, key: Optional[str] = None) -> None:
        if key is not None:
            await self.client.delete(self._normalize_rate_key(key))
            return
        async for redis_key in self.client.scan_iter(match=f"{self.namespace}:rate:*"):
            await self.client.delete(redis_key)

    async def close(self) -> None:
        await self.client.aclose()
