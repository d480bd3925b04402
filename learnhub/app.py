from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from learnhub.api.error_handling import register_exception_handlers
from learnhub.api.routes import router
from learnhub.config import Settings, get_settings
from learnhub.logging import get_logger, set_correlation_id
from learnhub.service.runtime import Runtime, get_runtime, set_runtime
from learnhub.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0

_NO_STORE_PATHS = ("/api/", "/healthz")


async def _run_expiry_purge(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop that reaps expired token and OTP records."""
    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                tokens = await asyncio.to_thread(runtime.tokens.purge_expired)
                otps = await asyncio.to_thread(runtime.otps.purge_expired)
                if tokens or otps:
                    logger.info("expired_records_purged", tokens=tokens, otps=otps)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expiry_purge_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("expiry_purge_stopped")


async def _check_component(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API application.

    An explicit ``settings`` object gets its own ``Runtime`` at startup;
    otherwise the process-wide runtime from ``get_runtime`` is used.
    """
    app_settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings is not None:
            set_runtime(Runtime(settings))
        runtime = get_runtime()
        try:
            runtime.seed_admin_from_settings()
        except Exception as exc:
            logger.error("admin_seed_failed", error_type=type(exc).__name__, error=str(exc))
            raise

        purge_task: asyncio.Task | None = None
        if runtime.settings.purge_interval_seconds > 0:
            purge_task = asyncio.create_task(
                _run_expiry_purge(runtime, runtime.settings.purge_interval_seconds)
            )
        logger.info("learnhub_started", environment=runtime.settings.environment)

        yield

        if purge_task is not None:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task
        try:
            await get_runtime().close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
        else:
            logger.info("learnhub_stopped")

    app = FastAPI(title="LearnHub LMS API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        headers = response.headers
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("Referrer-Policy", "no-referrer")
        # Auth responses carry tokens
        if request.url.path.startswith(_NO_STORE_PATHS):
            headers.setdefault("Cache-Control", "no-store")
        if app_settings.is_production:
            headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        if isinstance(runtime.store, PostgresStore):
            db_ok = await _check_component("database", runtime.store.ping)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": "postgres"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        if runtime.cache is None:
            cache_ok = True
            checks["redis"] = {"status": "not_configured"}
        else:
            cache_ok = await _check_component("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy"}

        return {
            "status": "healthy" if db_ok and cache_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
