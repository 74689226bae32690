"""
OpenTelemetry distributed tracing configuration for the TraceChain registry.

This module provides automatic instrumentation for:
- FastAPI (HTTP requests/responses)
- SQLAlchemy (database queries)

and a tracer used by RegistryService to wrap every operation in a span.

Configuration via environment variables:
- OTEL_ENABLED: Enable/disable tracing (default: false)
- OTEL_SERVICE_NAME: Service name for traces
- OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
- OTEL_EXPORTER_OTLP_HEADERS: Optional headers for OTLP exporter
- OTEL_TRACES_SAMPLER_ARG: Root sampling ratio (default: 1.0)
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from tracechain.core.config import settings

logger = logging.getLogger(__name__)

# Global tracer provider reference for shutdown
_tracer_provider: TracerProvider | None = None


def _parse_headers(headers_string: str | None) -> dict[str, str]:
    """
    Parse OTLP headers from environment variable format.

    Args:
        headers_string: Headers in format "key1=value1,key2=value2"

    Returns:
        Dictionary of headers
    """
    if not headers_string:
        return {}

    headers = {}
    for pair in headers_string.split(","):
        pair = pair.strip()
        if "=" in pair:
            key, value = pair.split("=", 1)
            headers[key.strip()] = value.strip()
    return headers


def _create_resource(service_name: str, app_env: str, app_region: str) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: service_name,
            DEPLOYMENT_ENVIRONMENT: app_env,
            "app.region": app_region,
            "telemetry.sdk.language": "python",
        }
    )


def init_telemetry() -> TracerProvider | None:
    """
    Initialize OpenTelemetry distributed tracing.

    Sets up a tracer provider with an OTLP gRPC exporter behind a batch
    span processor. Does nothing when OTEL_ENABLED is false.

    Returns:
        TracerProvider instance if enabled, None otherwise
    """
    global _tracer_provider

    if not settings.otel_enabled:
        logger.info("OpenTelemetry tracing is disabled (OTEL_ENABLED=false)")
        return None

    try:
        resource = _create_resource(
            service_name=settings.otel_service_name,
            app_env=settings.app_env.value,
            app_region=settings.app_region,
        )
        sampler = ParentBased(root=TraceIdRatioBased(settings.otel_traces_sampler_arg))
        tracer_provider = TracerProvider(resource=resource, sampler=sampler)

        span_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=_parse_headers(settings.otel_exporter_otlp_headers),
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(tracer_provider)
        _tracer_provider = tracer_provider

        logger.info(
            f"OpenTelemetry initialized: service={settings.otel_service_name}, "
            f"environment={settings.app_env.value}, endpoint={settings.otel_exporter_otlp_endpoint}"
        )
        return tracer_provider

    except Exception as e:
        logger.error(f"Failed to initialize OpenTelemetry: {e}", exc_info=True)
        return None


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if not settings.otel_enabled:
        logger.debug("OpenTelemetry disabled - skipping FastAPI instrumentation")
        return

    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI instrumentation enabled")
    except Exception as e:
        logger.error(f"Failed to instrument FastAPI: {e}", exc_info=True)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: Sync SQLAlchemy engine (use AsyncEngine.sync_engine for async engines)
    """
    if not settings.otel_enabled:
        logger.debug("OpenTelemetry disabled - skipping SQLAlchemy instrumentation")
        return

    try:
        SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=True)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.error(f"Failed to instrument SQLAlchemy: {e}", exc_info=True)


def shutdown_telemetry() -> None:
    """
    Shutdown OpenTelemetry tracer provider gracefully.

    Flushes all pending spans and closes connections to OTLP collector.
    """
    global _tracer_provider

    if _tracer_provider is None:
        logger.debug("OpenTelemetry tracer provider not initialized")
        return

    try:
        logger.info("Shutting down OpenTelemetry tracer provider")
        _tracer_provider.shutdown()
        _tracer_provider = None
    except Exception as e:
        logger.error(f"Error during OpenTelemetry shutdown: {e}", exc_info=True)


def get_tracer(name: str) -> trace.Tracer:
    """Tracer from the global provider (a no-op tracer until init_telemetry runs)."""
    return trace.get_tracer(name)


def get_trace_id() -> str | None:
    """
    Get the current trace ID from OpenTelemetry context.

    Returns:
        Trace ID as hex string, or None if no active span
    """
    current_span = trace.get_current_span()
    if not current_span.is_recording():
        return None
    return format(current_span.get_span_context().trace_id, "032x")


def get_span_id() -> str | None:
    """
    Get the current span ID from OpenTelemetry context.

    Returns:
        Span ID as hex string, or None if no active span
    """
    current_span = trace.get_current_span()
    if not current_span.is_recording():
        return None
    return format(current_span.get_span_context().span_id, "016x")
