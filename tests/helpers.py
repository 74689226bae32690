"""Shared test data and helpers for registry tests."""

from datetime import UTC, datetime, timedelta
from typing import Any

from tracechain.core.events import EventEnvelope
from tracechain.services.registry_service import RegistryService

ADMIN = "admin"
OWNER = "alice"
OTHER = "bob"
AUDITOR = "carol"

VALID_FROM = datetime(2025, 1, 1, tzinfo=UTC)
VALID_UNTIL = datetime(2026, 1, 1, tzinfo=UTC)


class RecordingPublisher:
    """Collects every published event in order."""

    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []

    async def publish(self, event: EventEnvelope) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


def as_actor(actor: str) -> dict[str, str]:
    """Request headers that make the test client act as `actor`."""
    return {"X-Actor-Id": actor}


def registration(**overrides: Any) -> dict[str, Any]:
    """Keyword arguments for a valid registration."""
    data: dict[str, Any] = {
        "name": "Amoxicillin 500mg",
        "entity_type": "pharmaceutical",
        "batch_key": "LOT-0001",
        "valid_from": VALID_FROM,
        "valid_until": VALID_UNTIL,
        "attributes": ["cold-chain"],
        "metadata_ref": "ipfs://meta/lot-0001",
    }
    data.update(overrides)
    return data


def checkpoint_item(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {"status": "shipped", "location": "Rotterdam DC"}
    data.update(overrides)
    return data


def check_item(rule_id: str = "GDP-TEMP", **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "rule_id": rule_id,
        "passed": True,
        "evidence": "logger export 2025-03-01",
        "confidence": 90,
    }
    data.update(overrides)
    return data


async def aregister(service: RegistryService, *, actor: str = OWNER, **overrides: Any):
    """Register an entity through the service."""
    return await service.register(**registration(**overrides), actor=actor)


async def aadd_rule(
    service: RegistryService,
    rule_id: str = "GDP-TEMP",
    *,
    severity: int = 2,
    entity_type: str = "pharmaceutical",
):
    """Add a catalog rule as the admin."""
    return await service.add_rule(
        rule_id=rule_id,
        name=f"Rule {rule_id}",
        entity_type=entity_type,
        requirement="Stored between 2 and 8 degrees",
        standard="GDP",
        severity=severity,
        actor=ADMIN,
    )


def later(hours: float) -> datetime:
    return VALID_FROM + timedelta(hours=hours)
