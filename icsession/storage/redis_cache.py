from __future__ import annotations

import hashlib
import secrets
import time
from typing import Sequence, Tuple

import redis.asyncio as aioredis

REVOCATION_CHANNEL = "ics:revocations"


class RedisCache:
    """Shared Redis state: revocation markers and rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 1.5

    # Sliding window log: trims entries older than the window, admits the
    # request if under the limit, otherwise bumps the consecutive violation
    # counter. Returns {allowed, count, violations}.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local violations_key = KEYS[2]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count < limit then
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window)
  redis.call('DEL', violations_key)
  return {1, count + 1, 0}
end

local violations = redis.call('INCR', violations_key)
redis.call('PEXPIRE', violations_key, window)
return {0, count, violations}
"""

    # Failure counter with lockout trigger. Returns {locked, attempts}; attempts
    # is -1 when the key was already locked.
    _FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._failure = self.client.register_script(self._FAILURE_SCRIPT)

    @staticmethod
    def _hashed_key(prefix: str, key: str) -> str:
        """Hash caller-controlled key material so it cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{prefix}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    # revocation markers
    async def publish_revocations(self, session_ids: Sequence[str], ttl_seconds: int) -> None:
        """Record revocations so every node sees them, then notify subscribers."""
        if not session_ids:
            return
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.set(f"ics:revoked:{session_id}", "1", ex=max(1, ttl_seconds))
        await pipe.execute()
        for session_id in session_ids:
            await self.client.publish(REVOCATION_CHANNEL, session_id)

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"ics:revoked:{session_id}"))

    # rate limiting
    async def hit_sliding_window(
        self, key: str, window_seconds: int, limit: int
    ) -> Tuple[bool, int, int]:
        """Count one request; returns (allowed, count, consecutive_violations)."""
        window_key = self._hashed_key("ics:rate", key)
        now_ms = int(time.time() * 1000)
        allowed, count, violations = await self._sliding_window(
            keys=[window_key, f"{window_key}:violations"],
            args=[now_ms, window_seconds * 1000, limit, f"{now_ms}-{secrets.token_hex(4)}"],
        )
        return bool(int(allowed)), int(count), int(violations)

    async def lockout_remaining_ms(self, key: str) -> int:
        """Milliseconds left on a lockout, 0 when the key is not locked."""
        ttl = await self.client.pttl(self._hashed_key("ics:lockout", key))
        return max(int(ttl), 0) if ttl is not None else 0

    async def record_failure(
        self, key: str, max_failures: int, window_seconds: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        """Atomically count a failure; returns (locked, attempts)."""
        result = await self._failure(
            keys=[self._hashed_key("ics:lockout", key), self._hashed_key("ics:failures", key)],
            args=[max_failures, window_seconds, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def clear_failures(self, key: str) -> None:
        await self.client.delete(self._hashed_key("ics:failures", key))
