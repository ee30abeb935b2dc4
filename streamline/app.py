from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from streamline.api.error_handling import register_exception_handlers
from streamline.api.routes import router
from streamline.config import Settings
from streamline.logging import get_logger, set_correlation_id
from streamline.service.rate_limit import run_sweep_loop

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3
SESSION_PURGE_INTERVAL_SECONDS = 3600

_background_tasks: List[asyncio.Task] = []


async def _run_session_purge(interval: float) -> None:
    """Drop expired sessions and reset tokens until cancelled."""
    from streamline.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval)
            runtime = get_runtime()
            try:
                removed = await runtime.sessions.purge_expired()
                tokens = runtime.auth.cleanup_expired_reset_tokens()
                if removed or tokens:
                    logger.info("expired_sessions_purged", sessions=removed, reset_tokens=tokens)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic sweepers and close the runtime on shutdown."""
    from streamline.service.runtime import get_runtime

    runtime = get_runtime()
    _background_tasks.append(
        asyncio.create_task(
            run_sweep_loop(runtime.limiter, runtime.settings.rate_limit_sweep_interval_seconds)
        )
    )
    _background_tasks.append(asyncio.create_task(_run_session_purge(SESSION_PURGE_INTERVAL_SECONDS)))

    yield

    for task in _background_tasks:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _background_tasks.clear()
    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Streamline Studio API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; a wildcard is not allowed alongside credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Project-ID", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for structured logs and echo it as ``X-Request-ID``."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and Redis reachability plus build info."""
    from streamline.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
