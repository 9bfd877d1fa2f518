from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from icsession.api.error_handling import register_exception_handlers
from icsession.api.routes import router
from icsession.config import get_settings
from icsession.logging import get_logger, set_correlation_id
from icsession.service.errors import ServiceError

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

_background_tasks: List[asyncio.Task] = []


async def _run_cleanup(interval_seconds: int) -> None:
    """Periodically prune expired sessions, challenges, rate buckets and snapshots."""
    from icsession.service.runtime import get_runtime

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await get_runtime().cleanup()
            except ServiceError as exc:
                logger.warning("cleanup_failed", error_code=exc.error_code.value)
    except asyncio.CancelledError:
        logger.info("cleanup_task_cancelled")
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    from icsession.service.runtime import get_runtime

    runtime = get_runtime()
    stop = asyncio.Event()
    if runtime.settings.cleanup_interval_seconds > 0:
        _background_tasks.append(
            asyncio.create_task(_run_cleanup(runtime.settings.cleanup_interval_seconds))
        )
    if runtime.cache is not None:
        _background_tasks.append(asyncio.create_task(runtime.sso.listen_for_revocations(stop)))
    logger.info("startup_complete", background_tasks=len(_background_tasks))

    yield

    stop.set()
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _background_tasks.clear()
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Session & Token Lifecycle Authority", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Session-ID",
        "X-Application-ID",
        "X-Federation-Key",
        "Idempotency-Key",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "Retry-After", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id to the request and echo it in ``X-Request-ID``.

    A client-supplied ``X-Request-ID`` is reused; otherwise a new UUID is
    generated. The id is merged into every log event and every envelope.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Liveness plus a bounded check of the session store and the shared cache."""
    from icsession.service.runtime import get_runtime

    try:
        checks = await get_runtime().health()
    except ServiceError as exc:
        logger.error("health_check_failed", error_code=exc.error_code.value)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": __version__},
        )
    return {
        "status": "healthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
