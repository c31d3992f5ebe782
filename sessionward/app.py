from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sessionward.api.error_handling import register_exception_handlers
from sessionward.api.routes import router
from sessionward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


_reaper_task: asyncio.Task | None = None


async def _run_reaper(interval_seconds: int) -> None:
    """Periodically purge expired refresh, revocation, session and OAuth records."""
    from sessionward.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await get_runtime().auth.cleanup_expired()
            if any(counts.values()):
                logger.info("reaper_cycle_complete", **counts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("reaper_cycle_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _reaper_task
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    _reaper_task = asyncio.create_task(
        _run_reaper(runtime.settings.reaper_interval_seconds)
    )
    logger.info("app_started", version=__version__)

    yield

    try:
        if _reaper_task:
            _reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _reaper_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionWard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id to the logging context and the response.

    Taken from ``X-Request-ID`` when the client sends one, otherwise generated.
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
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("API-Version", __version__)
    return response


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


register_exception_handlers(app)
app.include_router(router)
