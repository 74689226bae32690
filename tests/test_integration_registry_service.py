"""
Integration tests for RegistryService: transactions, serialization and
event delivery against a real SQLite database.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tests.helpers import (
    ADMIN,
    AUDITOR,
    OTHER,
    OWNER,
    RecordingPublisher,
    aadd_rule,
    aregister,
    check_item,
    checkpoint_item,
    registration,
)
from tracechain.core.errors import ConflictError, StateError, ValidationError
from tracechain.services.registry_service import RegistryService


@pytest.mark.integration
class TestLifecycle:
    @pytest.mark.anyio
    async def test_full_flow_publishes_events_in_order(
        self, service: RegistryService, publisher: RecordingPublisher
    ):
        await aadd_rule(service, "GDP-TEMP")
        entity = await aregister(service)
        await service.add_actor(entity.entity_id, new_actor=OTHER, actor=OWNER)
        await service.add_checkpoint(
            entity.entity_id, actor=OTHER, **checkpoint_item(location="Hamburg")
        )
        await service.check(entity.entity_id, actor=AUDITOR, **check_item(passed=False))

        assert publisher.types() == [
            "RuleAdded",
            "EntityRegistered",
            "ActorAdded",
            "CheckpointAdded",
            "ComplianceChecked",
            "ComplianceStatusUpdated",
        ]
        sequences = [e.sequence for e in publisher.events]
        assert sequences == sorted(sequences)

        summary = await service.summary(entity.entity_id)
        assert summary.checkpoint_count == 2
        assert summary.actor_count == 2
        assert summary.latest_checkpoint.location == "Hamburg"
        assert summary.compliance.compliant is False
        assert summary.compliance.failed_rule_ids == ["GDP-TEMP"]

        fetched = await service.get(entity.entity_id)
        assert fetched.version == entity.version + 3

    @pytest.mark.anyio
    async def test_failed_operation_leaves_no_trace(
        self, service: RegistryService, publisher: RecordingPublisher
    ):
        entity = await aregister(service)
        with pytest.raises(ValidationError):
            await service.batch_add_checkpoints(
                entity.entity_id,
                items=[checkpoint_item(), checkpoint_item(status="lost-in-space")],
                actor=OWNER,
            )
        assert len(await service.get_checkpoints(entity.entity_id)) == 1
        assert publisher.types() == ["EntityRegistered"]

    @pytest.mark.anyio
    async def test_batch_key_is_unique(self, service: RegistryService):
        await aregister(service)
        with pytest.raises(ConflictError):
            await aregister(service, actor=OTHER)
        assert await service.count() == 1


@pytest.mark.integration
class TestSerialization:
    @pytest.mark.anyio
    async def test_concurrent_appends_get_gapless_sequences(self, service: RegistryService):
        entity = await aregister(service)
        results = await asyncio.gather(
            *(
                service.add_checkpoint(
                    entity.entity_id, actor=OWNER, **checkpoint_item(location=f"Hub {i}")
                )
                for i in range(8)
            )
        )
        assert sorted(c.sequence for c in results) == list(range(1, 9))

        log = await service.get_checkpoints(entity.entity_id)
        assert [c.sequence for c in log] == list(range(9))
        assert (await service.get(entity.entity_id)).checkpoint_count == 9

    @pytest.mark.anyio
    async def test_concurrent_registrations_of_same_key(self, service: RegistryService):
        outcomes = await asyncio.gather(
            aregister(service), aregister(service, actor=OTHER), return_exceptions=True
        )
        assert sum(isinstance(o, ConflictError) for o in outcomes) == 1
        assert await service.count() == 1


@pytest.mark.integration
class TestPause:
    @pytest.mark.anyio
    async def test_pause_blocks_mutations_not_reads(self, service: RegistryService):
        await aadd_rule(service)
        entity = await aregister(service)
        await service.pause(actor=ADMIN)

        with pytest.raises(StateError):
            await aregister(service, batch_key="LOT-0002")
        with pytest.raises(StateError):
            await service.add_checkpoint(entity.entity_id, actor=OWNER, **checkpoint_item())
        with pytest.raises(StateError):
            await service.check(entity.entity_id, actor=OTHER, **check_item())

        assert (await service.get(entity.entity_id)).batch_key == "LOT-0001"
        assert (await service.registry_state()).paused is True
        status = await service.recompute(entity.entity_id, actor=OTHER)
        assert status.total_checks == 0

        await service.unpause(actor=ADMIN)
        checkpoint = await service.add_checkpoint(
            entity.entity_id, actor=OWNER, **checkpoint_item()
        )
        assert checkpoint.sequence == 1

    @pytest.mark.anyio
    async def test_rules_stay_administrable_while_paused(self, service: RegistryService):
        await service.pause(actor=ADMIN)
        rule = await aadd_rule(service, "HACCP-1", entity_type="food")
        assert rule.is_active is True


@pytest.mark.integration
class TestEventDelivery:
    @pytest.mark.anyio
    async def test_failed_publish_is_retried(self, sessionmaker):
        publisher = AsyncMock()
        publisher.publish.side_effect = ConnectionError("broker down")
        service = RegistryService(sessionmaker, publisher=publisher)

        entity = await aregister(service)
        events = await service.events()
        assert len(events) == 1
        assert events[0].delivered_at is None
        assert events[0].attempts == 1
        assert "broker down" in events[0].last_error

        publisher.publish.side_effect = None
        assert await service.dispatch_events() == 1
        published = publisher.publish.await_args.args[0]
        assert published.entity_id == entity.entity_id
        assert published.event_type.value == "EntityRegistered"

        events = await service.events()
        assert events[0].delivered_at is not None
        assert events[0].last_error is None
        assert await service.dispatch_events() == 0

    @pytest.mark.anyio
    async def test_batch_events_share_batch_id(
        self, service: RegistryService, publisher: RecordingPublisher
    ):
        await service.batch_register(
            items=[registration(batch_key=f"LOT-{i:04d}") for i in range(3)], actor=OWNER
        )
        batch_ids = {e.batch_id for e in publisher.events}
        assert len(publisher.events) == 3
        assert len(batch_ids) == 1
        assert None not in batch_ids

    @pytest.mark.anyio
    async def test_batch_check_reports_skips(
        self, service: RegistryService, publisher: RecordingPublisher
    ):
        await aadd_rule(service, "GDP-TEMP")
        entity = await aregister(service)
        result = await service.batch_check(
            entity.entity_id,
            items=[check_item("GDP-TEMP"), check_item("GDP-MISSING")],
            actor=OTHER,
        )
        assert result.applied_indexes == [0]
        assert [s.rule_id for s in result.skipped] == ["GDP-MISSING"]
        assert publisher.types()[-2:] == ["ComplianceChecked", "ComplianceStatusUpdated"]

    @pytest.mark.anyio
    async def test_events_filtered_by_entity(self, service: RegistryService):
        first = await aregister(service)
        await aregister(service, batch_key="LOT-0002")
        await service.add_checkpoint(first.entity_id, actor=OWNER, **checkpoint_item())

        events = await service.events(entity_id=first.entity_id)
        assert [e.event_type.value for e in events] == ["EntityRegistered", "CheckpointAdded"]

        after = await service.events(after=events[0].position)
        assert [e.position for e in after] == sorted(e.position for e in after)
        assert len(after) == 2

    @pytest.mark.anyio
    async def test_events_are_polled_once_dispatched(self, sessionmaker):
        service = RegistryService(
            sessionmaker, publisher=RecordingPublisher(), auto_dispatch=False
        )
        await aregister(service)
        assert await service.events() == []

        assert await service.dispatch_events() == 1
        events = await service.events()
        assert [e.position for e in events] == [1]
        assert events[0].delivered_at is not None
