from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clubauth.api.admin_routes import router as admin_router
from clubauth.api.error_handling import register_exception_handlers
from clubauth.api.routes import router
from clubauth.config import Settings
from clubauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_reaper_task: asyncio.Task | None = None


async def _run_session_reaper(interval_seconds: int) -> None:
    """Periodically delete expired sessions and stale login attempts."""
    from clubauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().auth.purge_expired)
        except Exception as exc:
            logger.error("session_reaper_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _reaper_task
    from clubauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_reaper_interval_seconds
    if interval > 0:
        _reaper_task = asyncio.create_task(_run_session_reaper(interval))
        logger.info("session_reaper_started", interval_seconds=interval)

    yield

    try:
        if _reaper_task:
            _reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _reaper_task
            _reaper_task = None
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Club Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    # Development accepts any origin; production only the configured list.
    if _settings.is_development:
        return ["*"]
    return _settings.allowed_origin_list


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.use_httponly_cookies,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def answer_options(request: Request, call_next):
    """OPTIONS always answers 200; CORS headers from a preflight are kept."""
    response = await call_next(request)
    if request.method != "OPTIONS" or response.status_code == 200:
        return response
    headers = {
        key: value
        for key, value in response.headers.items()
        if key.lower().startswith("access-control-")
    }
    return Response(status_code=200, headers=headers)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id for structured logging.

    The id is taken from ``X-Request-ID`` when the client sends one and is
    echoed back on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app, development=_settings.is_development)
app.include_router(router)
app.include_router(admin_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report reachability of the principal store and the tenant config store."""
    from clubauth.service.runtime import get_runtime

    runtime = get_runtime()

    async def _run_bounded(label: str, func) -> bool:
        try:
            return bool(
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    checks: Dict[str, Any] = {
        "store": await _run_bounded("store", runtime.store.ping),
        "tenant_store": await _run_bounded("tenant_store", runtime.tenant_store.ping),
    }
    healthy = all(checks.values())
    body = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
