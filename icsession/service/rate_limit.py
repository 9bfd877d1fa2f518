from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

from icsession.config import RATE_LIMIT_CLASSES, Settings
from icsession.logging import get_logger
from icsession.service.bounded import bounded_cache_call
from icsession.service.errors import RateLimitedError, ValidationError, locked_out
from icsession.storage.models import RateBucket
from icsession.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter:
    """Per (key, operation class) sliding-window limiter with exponential backoff.

    Refusals carry ``retry_after_ms = min(base * 2 ** (violations - 1), cap)``
    where ``violations`` counts consecutive refusals for the bucket. The same
    component tracks credential failures and locks a key out once it reaches
    ``login_max_failures`` inside ``login_failure_window_seconds``.

    With a Redis cache the counters are shared across nodes; otherwise they
    live in this process behind an ``asyncio.Lock``.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._buckets: Dict[Tuple[str, str], RateBucket] = {}
        self._failures: Dict[str, Tuple[int, float]] = {}
        self._lockouts: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def backoff_ms(self, violations: int) -> int:
        if violations <= 0:
            return 0
        base = self.settings.backoff_base_ms
        cap = self.settings.backoff_cap_ms
        # Past this exponent the cap always wins
        exponent = min(violations - 1, 32)
        return min(base * (2 ** exponent), cap)

    async def allow(self, key: str, operation_class: str) -> None:
        """Count one request against the bucket; raise ``RateLimitedError`` when over limit."""
        if operation_class not in RATE_LIMIT_CLASSES:
            raise ValidationError(f"unknown rate limit class '{operation_class}'")
        limit = self.settings.rate_limit_for(operation_class)
        window = self.settings.rate_limit_window_seconds
        bucket_key = f"{operation_class}:{key}"

        if self.cache:
            allowed, _, violations = await bounded_cache_call(
                "rate_limit",
                self.cache.hit_sliding_window(bucket_key, window, limit),
                timeout=self.settings.rate_limit_timeout_seconds,
            )
        else:
            allowed, violations = await self._hit_local(key, operation_class, limit, window)

        if not allowed:
            retry_after_ms = self.backoff_ms(violations)
            logger.info(
                "rate_limited",
                operation_class=operation_class,
                violations=violations,
                retry_after_ms=retry_after_ms,
            )
            raise RateLimitedError(retry_after_ms)

    async def _hit_local(
        self, key: str, operation_class: str, limit: int, window: int
    ) -> Tuple[bool, int]:
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.setdefault((key, operation_class), RateBucket())
            while bucket.hits and bucket.hits[0] <= now - window:
                bucket.hits.popleft()
            if len(bucket.hits) < limit:
                bucket.hits.append(now)
                bucket.violations = 0
                return True, 0
            bucket.violations += 1
            return False, bucket.violations

    async def check_lockout(self, key: str) -> None:
        """Fail fast with ``LOCKED_OUT`` while ``key`` is locked."""
        if self.cache:
            remaining_ms = await bounded_cache_call(
                "lockout_check",
                self.cache.lockout_remaining_ms(key),
                timeout=self.settings.rate_limit_timeout_seconds,
            )
        else:
            async with self._lock:
                remaining_ms = self._local_lockout_remaining_ms(key)
        if remaining_ms > 0:
            raise locked_out()

    def _local_lockout_remaining_ms(self, key: str) -> int:
        until = self._lockouts.get(key)
        if until is None:
            return 0
        remaining = until - self._clock()
        if remaining <= 0:
            self._lockouts.pop(key, None)
            return 0
        return int(remaining * 1000)

    async def record_failure(self, key: str) -> bool:
        """Count a failed credential; returns True when the key is now locked."""
        max_failures = self.settings.login_max_failures
        window = self.settings.login_failure_window_seconds
        lockout_seconds = self.settings.login_lockout_seconds
        if self.cache:
            locked, attempts = await bounded_cache_call(
                "lockout_record",
                self.cache.record_failure(key, max_failures, window, lockout_seconds),
                timeout=self.settings.rate_limit_timeout_seconds,
            )
        else:
            now = self._clock()
            async with self._lock:
                count, first_at = self._failures.get(key, (0, now))
                if now - first_at > window:
                    count, first_at = 0, now
                attempts = count + 1
                locked = attempts >= max_failures
                if locked:
                    self._lockouts[key] = now + lockout_seconds
                    self._failures.pop(key, None)
                else:
                    self._failures[key] = (attempts, first_at)
        if locked:
            logger.warning("credential_lockout_triggered", attempts=attempts)
        return locked

    async def record_success(self, key: str) -> None:
        if self.cache:
            await bounded_cache_call(
                "lockout_clear",
                self.cache.clear_failures(key),
                timeout=self.settings.rate_limit_timeout_seconds,
            )
            return
        async with self._lock:
            self._failures.pop(key, None)

    async def cleanup(self) -> int:
        """Drop idle in-process buckets and elapsed lockouts; returns entries removed."""
        now = self._clock()
        window = self.settings.rate_limit_window_seconds
        failure_window = self.settings.login_failure_window_seconds
        removed = 0
        async with self._lock:
            for bucket_key, bucket in list(self._buckets.items()):
                if not bucket.hits or bucket.hits[-1] <= now - window:
                    del self._buckets[bucket_key]
                    removed += 1
            for key, until in list(self._lockouts.items()):
                if until <= now:
                    del self._lockouts[key]
                    removed += 1
            for key, (_, first_at) in list(self._failures.items()):
                if now - first_at > failure_window:
                    del self._failures[key]
                    removed += 1
        return removed
