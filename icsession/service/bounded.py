from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from redis.exceptions import RedisError

from icsession.logging import get_logger
from icsession.service.errors import ErrorCode, ServerError
from icsession.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def _unavailable(operation: str) -> ServerError:
    return ServerError(
        "session store unavailable",
        error_code=ErrorCode.STORE_TIMEOUT,
        detail={"operation": operation},
    )


async def bounded_store_call(
    operation: str, func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread with a deadline.

    A timeout or backend outage fails closed with ``ServerError``; the raw
    exception text is logged, never returned to the caller.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=operation, timeout_seconds=timeout)
        raise _unavailable(operation) from exc
    except StoreUnavailable as exc:
        logger.error("store_unavailable", operation=operation, error=exc.message)
        raise _unavailable(operation) from exc


async def bounded_cache_call(operation: str, awaitable: Awaitable[T], *, timeout: float) -> T:
    """Await a Redis coroutine with a deadline, failing closed on timeout or Redis errors."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("cache_call_timeout", operation=operation, timeout_seconds=timeout)
        raise _unavailable(operation) from exc
    except RedisError as exc:
        logger.error(
            "cache_call_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise _unavailable(operation) from exc
