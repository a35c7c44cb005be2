from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from csaccess.api.error_handling import register_exception_handlers
from csaccess.api.routes import router
from csaccess.config import get_settings
from csaccess.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store on startup and release it on shutdown."""
    from csaccess.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.open()
    logger.info("startup_complete", environment=runtime.settings.environment.value)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id comes from the client's X-Request-ID header when present, otherwise
    a new UUID; it is echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and get_settings().is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
    return response


async def health() -> Dict[str, Any]:
    """Liveness plus a store probe; never requires authentication."""
    from csaccess.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    try:
        await runtime.store.find_by_id("00000000-0000-0000-0000-000000000000")
        checks["database"] = {"status": "healthy", "type": store_type}
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        checks["database"] = {"status": "unhealthy", "type": store_type}
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "environment": runtime.settings.environment.value,
        "version": __version__,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    application = FastAPI(title="CSAccess API", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    application.middleware("http")(add_correlation_id)
    application.middleware("http")(add_security_headers)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/api/health", health, methods=["GET"], tags=["health"])
    return application


app = create_app()
