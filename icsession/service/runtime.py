from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from icsession.config import get_settings, reset_settings_cache
from icsession.logging import get_logger
from icsession.service.bounded import bounded_cache_call, bounded_store_call
from icsession.service.mfa import StepUpGate
from icsession.service.rate_limit import RateLimiter
from icsession.service.sso import SSOCoordinator
from icsession.service.tokens import TokenIssuer
from icsession.service.verifier import CredentialVerifier
from icsession.storage.memory import MemoryStore
from icsession.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL before logging it.

    redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
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
    """Holds the singleton components behind the HTTP surface."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(mfa_encryption_key=self.settings.mfa_secret_key)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared revocation and rate limits; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_not_used",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, lockouts and "
                    "revocation broadcast are local to this process."
                ),
                mode=fallback_mode,
            )

        self.limiter = RateLimiter(self.settings, self.cache)
        self.verifier = CredentialVerifier(self.store, self.limiter, self.settings)
        self.tokens = TokenIssuer(self.store, self.settings)
        self.sso = SSOCoordinator(self.store, self.settings, self.cache)
        self.mfa = StepUpGate(self.store, self.tokens, self.limiter, self.settings)
        # A reused refresh token revokes the session; other nodes must drop it too
        self.tokens.add_revocation_listener(self.sso.forget)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            trusted_applications=len(self.settings.trusted_applications),
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
        )

    async def cleanup(self) -> Dict[str, int]:
        """Prune expired sessions, challenges, rate buckets and stale snapshots."""
        removed = await bounded_store_call(
            "cleanup_expired",
            self.store.cleanup_expired,
            timeout=self.settings.store_timeout_seconds,
        )
        removed["rate_buckets"] = await self.limiter.cleanup()
        removed["snapshots"] = self.sso.prune_snapshots()
        if any(removed.values()):
            logger.info("cleanup_completed", **removed)
        return removed

    async def health(self) -> Dict[str, str]:
        status = {"store": "ok", "cache": "disabled"}
        await bounded_store_call(
            "ping", self.store.ping, timeout=self.settings.store_timeout_seconds
        )
        if self.cache:
            await bounded_cache_call(
                "ping", self.cache.ping(), timeout=self.settings.store_timeout_seconds
            )
            status["cache"] = "ok"
        return status

    async def close(self) -> None:
        self.store.close()
        if self.cache:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked check is the fast path once the
    runtime exists, the locked one stops two threads building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
