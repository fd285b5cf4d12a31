from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from taskverse.api.error_handling import error_response, register_exception_handlers
from taskverse.api.routes import RateLimitInfo, client_ip, router
from taskverse.config import Settings, get_settings
from taskverse.logging import get_logger, set_correlation_id
from taskverse.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Delete expired and revoked refresh sessions on a fixed cadence."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime = get_runtime()
            await asyncio.to_thread(runtime.sessions.sweep_sessions)
        except Exception as exc:
            logger.error("session_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    runtime = get_runtime()
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(interval))
        logger.info("session_sweep_scheduled", interval_seconds=interval)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def health() -> Dict[str, Any]:
    """Report store, Redis and filesystem health plus the running version."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

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

    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.store.fs_root)

    def _fs_probe() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    overall_healthy = overall_healthy and fs_ok

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": runtime.settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def api_info() -> Dict[str, Any]:
    return {
        "name": "TaskVerse API",
        "version": get_settings().app_version,
        "description": "Task management API with real-time updates",
        "endpoints": {
            "auth": "/api/auth",
            "users": "/api/users",
            "categories": "/api/categories",
            "tasks": "/api/tasks",
            "realtime": "/api/ws",
        },
    }


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="TaskVerse API", version=settings.app_version, lifespan=lifespan)

    @app.middleware("http")
    async def enforce_general_rate_limit(request: Request, call_next):
        if not request.url.path.startswith("/api"):
            return await call_next(request)
        runtime = get_runtime()
        limit = runtime.settings.rate_limit_max_requests
        window = runtime.settings.rate_limit_window_seconds
        allowed, remaining, reset_seconds = await check_rate_limit(
            runtime, f"ip:{client_ip(request)}", limit, window, return_remaining=True
        )
        info = RateLimitInfo(limit, remaining, reset_seconds or window)
        if not allowed:
            logger.warning("rate_limited", path=request.url.path, ip=client_ip(request))
            return error_response(
                429,
                "Too many requests from this IP, please try again later.",
                headers=dict(info.headers, **{"Retry-After": str(info.reset_seconds)}),
            )
        response = await call_next(request)
        for name, value in info.headers.items():
            response.headers.setdefault(name, value)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with X-Request-ID (or a fresh uuid) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    app.add_api_route("/api", api_info, methods=["GET"], tags=["health"])
    app.include_router(router)
    return app


app = create_app()
