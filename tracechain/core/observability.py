"""
Observability module for the TraceChain registry.

Provides:
- Structured logging with JSON format and correlation IDs
- Request correlation ID (request_id) generation and propagation
- Prometheus metrics collection (HTTP, registry operations, event delivery)
- Request tracking middleware for latency and status codes
- Context management for actor_id and region

Usage:
    from tracechain.core.observability import (
        get_request_id,
        set_correlation_id,
        metrics,
    )
"""

import json
import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime

from fastapi import Request, Response
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# ============================================================================
# Context Variables for Request Tracking
# ============================================================================

# Correlation ID - links all logs for a single request
_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Authenticated actor - the identity mutations are performed on behalf of
_actor_id_ctx: ContextVar[str] = ContextVar("actor_id", default="")

# Region for deployment isolation
_region_ctx: ContextVar[str] = ContextVar("region", default="")


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def get_request_id() -> str:
    """Get the current request ID from context."""
    return _request_id_ctx.get()


def set_correlation_id(request_id: str) -> None:
    """Set the correlation ID for the current request context."""
    _request_id_ctx.set(request_id)


def get_actor_id() -> str:
    """Get the current actor ID from context."""
    return _actor_id_ctx.get()


def set_actor_id(actor_id: str) -> None:
    """Set the actor ID for the current request context."""
    _actor_id_ctx.set(actor_id)


def get_region() -> str:
    """Get the current region from context."""
    return _region_ctx.get()


def set_region(region: str) -> None:
    """Set the region for the current request context."""
    _region_ctx.set(region)


# ============================================================================
# Structured Logging Configuration
# ============================================================================

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs as JSON with standard fields:
    - timestamp: ISO 8601 format
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - request_id: Correlation ID (if available)
    - trace_id / span_id: OpenTelemetry context (if available)
    - actor_id: Authenticated actor (if available)
    - region: Deployment region (if available)
    - extra: Any additional context from logging.extra
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_entry["request_id"] = request_id

        from tracechain.core.telemetry import get_span_id, get_trace_id

        trace_id = get_trace_id()
        if trace_id:
            log_entry["trace_id"] = trace_id
        span_id = get_span_id()
        if span_id:
            log_entry["span_id"] = span_id

        actor_id = get_actor_id()
        if actor_id:
            log_entry["actor_id"] = actor_id

        region = get_region()
        if region:
            log_entry["region"] = region

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        log_entry["file"] = record.pathname
        log_entry["line"] = record.lineno
        log_entry["function"] = record.funcName

        # logger.info("msg", extra={"key": "value"}) lands on the record itself
        extra_keys = {
            k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_KEYS
        }
        if extra_keys:
            log_entry["extra"] = extra_keys

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: str = "INFO") -> None:
    """
    Configure root logger with structured JSON formatting.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)


# ============================================================================
# Prometheus Metrics
# ============================================================================

# Use a custom registry to avoid conflicts with other Prometheus metrics
_registry = CollectorRegistry()


class Metrics:
    """
    Centralized metrics collection for the application.

    Metrics groups:
    - HTTP: Request rate, errors, latency
    - Registry: entities, checkpoints, compliance checks, operation timing
    - Events: outbox delivery
    """

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry

        # -------------------------------------------------------------------
        # HTTP Metrics
        # -------------------------------------------------------------------

        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "route", "status_code", "region"],
            registry=self.registry,
        )

        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency in seconds",
            ["method", "route", "region"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )

        self.http_requests_in_progress = Gauge(
            "http_requests_in_progress",
            "HTTP requests currently in progress",
            ["method", "route", "region"],
            registry=self.registry,
        )

        self.http_errors_total = Counter(
            "http_errors_total",
            "Total HTTP errors",
            ["error_type", "method", "route", "region"],
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Registry Metrics
        # -------------------------------------------------------------------

        self.entities_registered_total = Counter(
            "registry_entities_registered_total",
            "Entities registered",
            ["entity_type"],
            registry=self.registry,
        )

        self.checkpoints_appended_total = Counter(
            "registry_checkpoints_appended_total",
            "Checkpoints appended to entity logs",
            ["status"],
            registry=self.registry,
        )

        self.compliance_checks_total = Counter(
            "registry_compliance_checks_total",
            "Compliance checks recorded",
            ["outcome"],
            registry=self.registry,
        )

        self.compliance_checks_skipped_total = Counter(
            "registry_compliance_checks_skipped_total",
            "Batch compliance items skipped",
            ["reason"],
            registry=self.registry,
        )

        self.operation_duration_seconds = Histogram(
            "registry_operation_duration_seconds",
            "Registry service operation duration in seconds",
            ["operation", "status"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Event Metrics
        # -------------------------------------------------------------------

        self.events_dispatched_total = Counter(
            "registry_events_dispatched_total",
            "Outbox events handed to the publisher",
            ["status"],
            registry=self.registry,
        )


# Global metrics instance
metrics = Metrics(_registry)


@contextmanager
def track_operation(operation: str, metrics_instance: Metrics | None = None) -> Iterator[None]:
    """
    Time a registry operation and record it with its outcome.

    Usage:
        with track_operation("add_checkpoint"):
            ...
    """
    m = metrics_instance or metrics
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        m.operation_duration_seconds.labels(operation=operation, status=status).observe(
            time.perf_counter() - start
        )


# ============================================================================
# Middleware
# ============================================================================


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds observability to all requests.

    Features:
    - Generates and propagates request_id (correlation ID)
    - Logs all requests with structured fields
    - Tracks request latency
    - Records Prometheus metrics
    - Adds request_id to response headers
    """

    def __init__(
        self,
        app: ASGIApp,
        metrics_instance: Metrics | None = None,
        skip_paths: list[str] | None = None,
        request_id_header: str = "X-Request-ID",
        region: str = "",
    ) -> None:
        super().__init__(app)
        self.metrics = metrics_instance or metrics
        self.skip_paths = set(skip_paths or ["/api/v1/health", "/api/v1/readyz", "/metrics"])
        self.request_id_header = request_id_header
        self.region = region

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.request_id_header) or generate_request_id()
        set_correlation_id(request_id)
        set_region(self.region)

        route = request.scope.get("route")
        route_pattern = getattr(route, "path", None) or request.url.path
        region = self.region or "unknown"

        is_skipped_path = any(route_pattern.startswith(path) for path in self.skip_paths)

        self.metrics.http_requests_in_progress.labels(
            method=request.method, route=route_pattern, region=region
        ).inc()

        start_time = time.time()
        logger = logging.getLogger("tracechain.request")

        try:
            response = await call_next(request)
            latency_ms = (time.time() - start_time) * 1000

            self.metrics.http_requests_total.labels(
                method=request.method,
                route=route_pattern,
                status_code=response.status_code,
                region=region,
            ).inc()
            self.metrics.http_request_duration_seconds.labels(
                method=request.method, route=route_pattern, region=region
            ).observe(latency_ms / 1000)

            response.headers[self.request_id_header] = request_id

            if not is_skipped_path:
                logger.info(
                    f"{request.method} {route_pattern}",
                    extra={
                        "method": request.method,
                        "route": route_pattern,
                        "status_code": response.status_code,
                        "latency_ms": round(latency_ms, 2),
                    },
                )

            return response

        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            error_type = type(e).__name__
            self.metrics.http_requests_total.labels(
                method=request.method,
                route=route_pattern,
                status_code=500,
                region=region,
            ).inc()
            self.metrics.http_errors_total.labels(
                error_type=error_type, method=request.method, route=route_pattern, region=region
            ).inc()
            self.metrics.http_request_duration_seconds.labels(
                method=request.method, route=route_pattern, region=region
            ).observe(latency_ms / 1000)

            logger.error(
                f"{request.method} {route_pattern} - {error_type}: {str(e)}",
                extra={
                    "method": request.method,
                    "route": route_pattern,
                    "status_code": 500,
                    "latency_ms": round(latency_ms, 2),
                    "error_type": error_type,
                },
                exc_info=True,
            )
            raise

        finally:
            self.metrics.http_requests_in_progress.labels(
                method=request.method, route=route_pattern, region=region
            ).dec()


# ============================================================================
# Metrics Endpoint
# ============================================================================


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(_registry),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
