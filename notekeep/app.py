from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from notekeep.api.error_handling import register_exception_handlers
from notekeep.api.routes import router
from notekeep.config import Settings
from notekeep.logging import get_logger, set_correlation_id
from notekeep.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Periodically purge expired sessions, codes, devices and old attempts."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await get_runtime().auth.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("auth_maintenance_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("auth_maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _maintenance_task
    runtime = get_runtime()
    _maintenance_task = asyncio.create_task(
        _run_maintenance(runtime.settings.maintenance_interval_seconds)
    )

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
        await runtime.auth.drain_background()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Notekeep Auth", version=__version__, lifespan=lifespan)

if _settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with ``X-Request-ID`` and echo it back."""
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
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    runtime = get_runtime()
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

    if hasattr(runtime.store, "_connect"):

        def _db_ping() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_ping)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
