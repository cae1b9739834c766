from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from listeners.api.error_handling import register_exception_handlers
from listeners.api.routes import router
from listeners.config import Settings
from listeners.logging import bind_request_context, get_logger, set_correlation_id
from listeners.service.cache import CacheService
from listeners.storage.kv import StoreUnavailableError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

_cleanup_task: asyncio.Task | None = None


async def _sweep_orphaned_keys(cache: CacheService, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await cache.cleanup_orphaned_keys()
        except Exception as exc:
            logger.error("cache_cleanup_task_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Check the store, start the orphan sweep, and close the connection on shutdown."""
    global _cleanup_task
    from listeners.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.kv.ping()
        logger.info("kv_store_connected")
    except StoreUnavailableError as exc:
        # Startup continues without the store
        logger.warning("kv_store_unavailable_on_startup", error=str(exc))

    interval = runtime.settings.cache_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_sweep_orphaned_keys(runtime.cache, interval))
        logger.info("cache_cleanup_scheduled", interval_seconds=interval)

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Listeners API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return _settings.cors_allow_origins or list(_DEV_ORIGINS)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "RateLimit-Limit",
        "RateLimit-Remaining",
        "RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag the request with X-Request-ID (client supplied or fresh) and log its outcome."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    bind_request_context(method=request.method, path=request.url.path)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    logger.debug(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, private")
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    return response


register_exception_handlers(app)
app.include_router(router)
