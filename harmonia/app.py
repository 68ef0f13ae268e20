from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from harmonia.api.error_handling import register_exception_handlers
from harmonia.api.routes import router
from harmonia.config import get_settings
from harmonia.logging import get_logger, set_correlation_id
from harmonia.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _allowed_origins(origins: List[str]) -> List[str]:
    if origins:
        return origins
    # Local dev hosts; no wildcard because cookies are sent with credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.runtime is None:
        app.state.runtime = Runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP application around an explicit service graph.

    When ``runtime`` is omitted it is constructed from the environment on
    startup.
    """
    app = FastAPI(title="Harmonia Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    settings = runtime.settings if runtime is not None else get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with ``X-Request-ID`` (client supplied or new) for log tracing."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        """Report key-value store and account store reachability."""
        current: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        try:
            kv_ok = await asyncio.wait_for(current.kv.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="kv", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            kv_ok = False
        checks["kv"] = {"status": "healthy" if kv_ok else "unhealthy"}

        try:
            await asyncio.wait_for(
                asyncio.to_thread(current.accounts.count_accounts), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            store_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="accounts", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            store_ok = False
        except Exception as exc:
            logger.error("health_check_accounts_failed", error_type=type(exc).__name__, error=str(exc))
            store_ok = False
        checks["accounts"] = {"status": "healthy" if store_ok else "unhealthy"}

        healthy = kv_ok and store_ok
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


app = create_app()
