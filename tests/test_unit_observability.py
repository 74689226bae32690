"""
Unit tests for observability features.

Tests cover:
- Request correlation ID and actor/region context variables
- Structured JSON logging
- Operation timing metrics
- Request tracking middleware
"""

import json
import logging

import httpx
import pytest
from fastapi import FastAPI
from prometheus_client import CollectorRegistry, generate_latest

from tracechain.core.observability import (
    Metrics,
    ObservabilityMiddleware,
    StructuredFormatter,
    generate_request_id,
    get_actor_id,
    get_request_id,
    metrics_endpoint,
    set_actor_id,
    set_correlation_id,
    set_region,
    track_operation,
)


@pytest.fixture
def isolated_metrics() -> Metrics:
    return Metrics(CollectorRegistry())


def _sample(m: Metrics, name: str, labels: dict) -> float | None:
    return m.registry.get_sample_value(name, labels)


class TestContext:
    def test_request_ids_are_unique(self):
        assert generate_request_id() != generate_request_id()

    def test_context_round_trip(self):
        set_correlation_id("req-1")
        set_actor_id("alice")
        assert get_request_id() == "req-1"
        assert get_actor_id() == "alice"
        set_actor_id("")
        assert get_actor_id() == ""


class TestStructuredFormatter:
    def _format(self, **extra) -> dict:
        record = logging.LogRecord(
            name="tracechain.test",
            level=logging.WARNING,
            pathname=__file__,
            lineno=10,
            msg="checkpoint %s rejected",
            args=(3,),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return json.loads(StructuredFormatter().format(record))

    def test_outputs_json_with_context(self):
        set_correlation_id("req-42")
        set_actor_id("bob")
        set_region("EU")
        try:
            entry = self._format()
        finally:
            set_correlation_id("")
            set_actor_id("")
            set_region("")

        assert entry["level"] == "WARNING"
        assert entry["message"] == "checkpoint 3 rejected"
        assert entry["request_id"] == "req-42"
        assert entry["actor_id"] == "bob"
        assert entry["region"] == "EU"

    def test_extra_fields_are_nested(self):
        entry = self._format(entity_id=7, sequence=3)
        assert entry["extra"] == {"entity_id": 7, "sequence": 3}


class TestTrackOperation:
    def test_records_success(self, isolated_metrics: Metrics):
        with track_operation("add_checkpoint", isolated_metrics):
            pass
        count = _sample(
            isolated_metrics,
            "registry_operation_duration_seconds_count",
            {"operation": "add_checkpoint", "status": "success"},
        )
        assert count == 1

    def test_records_error_and_reraises(self, isolated_metrics: Metrics):
        with pytest.raises(RuntimeError):
            with track_operation("check", isolated_metrics):
                raise RuntimeError("boom")
        count = _sample(
            isolated_metrics,
            "registry_operation_duration_seconds_count",
            {"operation": "check", "status": "error"},
        )
        assert count == 1


class TestMiddleware:
    @pytest.mark.anyio
    async def test_sets_request_id_header_and_counts(self, isolated_metrics: Metrics):
        app = FastAPI()
        app.add_middleware(
            ObservabilityMiddleware, metrics_instance=isolated_metrics, region="EU"
        )

        @app.get("/api/v1/things")
        async def things():
            return {"ok": True}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/things", headers={"X-Request-ID": "abc"})

        assert response.headers["X-Request-ID"] == "abc"
        total = _sample(
            isolated_metrics,
            "http_requests_total",
            {"method": "GET", "route": "/api/v1/things", "status_code": "200", "region": "EU"},
        )
        assert total == 1

    @pytest.mark.anyio
    async def test_generates_request_id(self, isolated_metrics: Metrics):
        app = FastAPI()
        app.add_middleware(ObservabilityMiddleware, metrics_instance=isolated_metrics)

        @app.get("/ping")
        async def ping():
            return {}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ping")
        assert response.headers["X-Request-ID"]


def test_metrics_endpoint_exposes_registry_metrics():
    response = metrics_endpoint()
    assert response.media_type.startswith("text/plain")
    assert b"registry_events_dispatched_total" in response.body


def test_isolated_registry_is_separate(isolated_metrics: Metrics):
    assert b"registry_operation_duration_seconds" in generate_latest(isolated_metrics.registry)
