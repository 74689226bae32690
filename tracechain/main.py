import hmac
import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tracechain.api.routes.actors import router as actors_router
from tracechain.api.routes.admin import router as admin_router
from tracechain.api.routes.checkpoints import router as checkpoints_router
from tracechain.api.routes.compliance import router as compliance_router
from tracechain.api.routes.entities import router as entities_router
from tracechain.api.routes.events import router as events_router
from tracechain.api.routes.health import router as health_router
from tracechain.api.routes.rules import router as rules_router
from tracechain.core.config import settings
from tracechain.core.db import init_models, reset_async_engine
from tracechain.core.errors import TraceChainError, get_status_code
from tracechain.core.observability import (
    ObservabilityMiddleware,
    configure_structured_logging,
    get_actor_id,
    get_request_id,
    metrics_endpoint,
)
from tracechain.core.telemetry import init_telemetry, instrument_fastapi, shutdown_telemetry

# Configure structured logging before creating logger
if settings.observability_structured_logs:
    configure_structured_logging(settings.app_log_level)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

_SENSITIVE_PATTERNS = [
    r"[/\\][\w/-]+\.py",  # File paths
    r"SELECT.*FROM",
    r"INSERT INTO.*VALUES",
    r"UPDATE.*SET",
    r"DELETE FROM",
]


def _sanitize_error_details(details: dict[str, Any]) -> dict[str, Any]:
    """
    Strip file paths and SQL fragments from error details in production.

    Outside prod the details are returned unchanged.
    """
    if settings.app_env != "prod":
        return details

    sanitized: dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, str):
            if any(re.search(p, value, re.IGNORECASE) for p in _SENSITIVE_PATTERNS):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = value
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_error_details(value)
        elif isinstance(value, list):
            sanitized[key] = [
                _sanitize_error_details(item) if isinstance(item, dict) else item for item in value
            ]
        else:
            sanitized[key] = value
    return sanitized


def _request_context(request: Request) -> dict[str, Any]:
    return {
        "path": request.url.path,
        "method": request.method,
        "request_id": get_request_id(),
        "actor_id": get_actor_id(),
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_telemetry()
    instrument_fastapi(app)
    # Production schemas are managed out of band; local/test create tables on start
    if settings.app_env in ("local", "test"):
        await init_models()
    logger.info("TraceChain registry started", extra={"app_env": settings.app_env})
    try:
        yield
    finally:
        shutdown_telemetry()
        await reset_async_engine()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Sets up:
    - OpenTelemetry tracing (when OTEL_ENABLED)
    - Observability middleware (request ids, Prometheus metrics)
    - CORS middleware
    - Exception handlers for domain errors
    - API routers under /api/v1
    - Token-protected /metrics endpoint
    """
    app = FastAPI(
        title="TraceChain Registry API",
        description="Supply-chain provenance and compliance registry",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ============================================================================
    # Middleware
    # ============================================================================

    if settings.observability_enabled:
        app.add_middleware(
            ObservabilityMiddleware,
            request_id_header=settings.observability_request_id_header,
            region=settings.app_region,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================================================
    # Exception Handlers
    # ============================================================================

    @app.exception_handler(TraceChainError)
    async def trace_chain_error_handler(request: Request, exc: TraceChainError) -> JSONResponse:
        """
        Map domain errors to HTTP status codes with a structured body.

        4xx are logged at WARNING, 5xx at ERROR.
        """
        status_code = get_status_code(exc)
        context = {"details": exc.details, **_request_context(request)}

        if status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}", extra=context)
        else:
            logger.warning(f"{exc.__class__.__name__}: {exc.message}", extra=context)

        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.__class__.__name__,
                "message": exc.message,
                "details": _sanitize_error_details(exc.details),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if exc.status_code in (401, 403):
            logger.warning(
                f"Security event: HTTP {exc.status_code}",
                extra={"security_event": True, "reason": str(exc.detail), **_request_context(request)},
            )
        elif exc.status_code >= 500:
            logger.error(f"HTTP {exc.status_code}: {exc.detail}", extra=_request_context(request))

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "HTTPException", "message": exc.detail, "details": {}},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log the full exception and return a generic 500."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True, extra=_request_context(request))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": {},
            },
        )

    # ============================================================================
    # Router Registration
    # ============================================================================

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(entities_router, prefix=API_PREFIX)
    app.include_router(checkpoints_router, prefix=API_PREFIX)
    app.include_router(actors_router, prefix=API_PREFIX)
    app.include_router(rules_router, prefix=API_PREFIX)
    app.include_router(compliance_router, prefix=API_PREFIX)
    app.include_router(events_router, prefix=API_PREFIX)
    app.include_router(admin_router, prefix=API_PREFIX)

    # ============================================================================
    # Metrics Endpoint (Prometheus) - Token Protected
    # ============================================================================

    async def protected_metrics(request: Request) -> Response:
        """Prometheus metrics; always requires the X-Metrics-Token header."""
        expected_token = settings.metrics_token
        if not expected_token:
            logger.error(
                "Metrics endpoint accessed but METRICS_TOKEN not configured",
                extra={"security_event": True, "event_type": "METRICS_NOT_CONFIGURED"},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Metrics token not configured. Set METRICS_TOKEN environment variable.",
            )

        # Constant-time comparison
        metrics_token = request.headers.get("X-Metrics-Token")
        if not hmac.compare_digest(metrics_token or "", expected_token):
            logger.warning(
                "Unauthorized metrics access attempt",
                extra={"security_event": True, "event_type": "METRICS_ACCESS_DENIED"},
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid metrics token")

        return metrics_endpoint()

    if settings.observability_enabled:
        app.add_route("/metrics", protected_metrics)

    return app


app = create_app()
