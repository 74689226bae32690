"""Tests for the append-only checkpoint log."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers import ADMIN, AUDITOR, OTHER, OWNER, checkpoint_item, registration
from tracechain.core.config import settings
from tracechain.core.errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    ValidationError,
)
from tracechain.db.models import EntityActor, EventOutbox
from tracechain.domain.enums import CheckpointStatus, EventType
from tracechain.repos import checkpoint_repo, control_repo, entity_repo


@pytest.fixture
async def entity(db_session: AsyncSession):
    return await entity_repo.register_entity(db_session, **registration(), actor=OWNER)


async def _add(db: AsyncSession, entity_id: int, actor: str = OWNER, **overrides):
    return await checkpoint_repo.add_checkpoint(
        db, entity_id=entity_id, actor=actor, **checkpoint_item(**overrides)
    )


@pytest.mark.unit
class TestAddCheckpoint:
    @pytest.mark.anyio
    async def test_sequences_are_gapless(self, db_session: AsyncSession, entity):
        added = [await _add(db_session, entity.entity_id) for _ in range(3)]
        assert [c.sequence for c in added] == [1, 2, 3]
        assert entity.checkpoint_count == 4

        log = await checkpoint_repo.list_checkpoints(db_session, entity_id=entity.entity_id)
        assert [c.sequence for c in log] == [0, 1, 2, 3]

    @pytest.mark.anyio
    async def test_readings_are_stored(self, db_session: AsyncSession, entity):
        checkpoint = await _add(
            db_session,
            entity.entity_id,
            temperature=4.5,
            humidity=40,
            latitude=51.9,
            longitude=4.5,
            note="seal intact",
        )
        assert checkpoint.temperature == 4.5
        assert checkpoint.humidity == 40.0
        assert checkpoint.note == "seal intact"
        assert checkpoint.status == CheckpointStatus.SHIPPED

    @pytest.mark.anyio
    async def test_emits_checkpoint_added(self, db_session: AsyncSession, entity):
        await _add(db_session, entity.entity_id)
        await db_session.flush()
        events = (
            await db_session.execute(select(EventOutbox).order_by(EventOutbox.sequence))
        ).scalars().all()
        assert events[-1].event_type == EventType.CHECKPOINT_ADDED
        assert events[-1].payload["sequence"] == 1
        assert events[-1].payload["status"] == "shipped"

    @pytest.mark.anyio
    async def test_unauthorized_actor(self, db_session: AsyncSession, entity):
        with pytest.raises(AuthorizationError):
            await _add(db_session, entity.entity_id, actor=OTHER)
        assert entity.checkpoint_count == 1

    @pytest.mark.anyio
    async def test_admin_is_always_authorized(self, db_session: AsyncSession, entity):
        checkpoint = await _add(db_session, entity.entity_id, actor=ADMIN)
        assert checkpoint.actor == ADMIN

    @pytest.mark.anyio
    async def test_added_actor_can_append(self, db_session: AsyncSession, entity):
        db_session.add(EntityActor(entity_id=entity.entity_id, actor=AUDITOR, added_by=OWNER))
        await db_session.flush()
        checkpoint = await _add(db_session, entity.entity_id, actor=AUDITOR)
        assert checkpoint.sequence == 1

    @pytest.mark.anyio
    async def test_unknown_entity(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await _add(db_session, 404)

    @pytest.mark.anyio
    async def test_inactive_entity(self, db_session: AsyncSession, entity):
        await entity_repo.deactivate_entity(db_session, entity_id=entity.entity_id, actor=OWNER)
        with pytest.raises(StateError):
            await _add(db_session, entity.entity_id)

    @pytest.mark.anyio
    async def test_paused_registry(self, db_session: AsyncSession, entity):
        await control_repo.set_paused(db_session, paused=True, actor=ADMIN)
        with pytest.raises(StateError):
            await _add(db_session, entity.entity_id)

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"location": ""},
            {"location": "x" * 256},
            {"note": "x" * 1001},
            {"status": "teleported"},
            {"status": "created"},
            {"humidity": 101},
            {"latitude": 10.0},
            {"latitude": 91.0, "longitude": 0.0},
            {"latitude": 0.0, "longitude": 181.0},
        ],
    )
    async def test_invalid_checkpoint(self, db_session: AsyncSession, entity, overrides):
        with pytest.raises(ValidationError):
            await _add(db_session, entity.entity_id, **overrides)
        assert entity.checkpoint_count == 1


@pytest.mark.unit
class TestBatchAddCheckpoints:
    @pytest.mark.anyio
    async def test_consecutive_sequences_and_shared_batch(self, db_session: AsyncSession, entity):
        items = [checkpoint_item(location=f"Hub {i}") for i in range(4)]
        added = await checkpoint_repo.batch_add_checkpoints(
            db_session, entity_id=entity.entity_id, items=items, actor=OWNER
        )
        assert [c.sequence for c in added] == [1, 2, 3, 4]
        assert len({c.timestamp for c in added}) == 1

        await db_session.flush()
        events = (
            await db_session.execute(
                select(EventOutbox).where(EventOutbox.event_type == EventType.CHECKPOINT_ADDED)
            )
        ).scalars().all()
        assert len(events) == 4
        assert len({e.batch_id for e in events}) == 1

    @pytest.mark.anyio
    async def test_invalid_item_aborts_batch(self, db_session: AsyncSession, entity):
        items = [checkpoint_item(), checkpoint_item(location="")]
        with pytest.raises(ValidationError) as exc_info:
            await checkpoint_repo.batch_add_checkpoints(
                db_session, entity_id=entity.entity_id, items=items, actor=OWNER
            )
        assert exc_info.value.details["position"] == 1
        assert entity.checkpoint_count == 1

    @pytest.mark.anyio
    async def test_batch_size_limits(self, db_session: AsyncSession, entity):
        with pytest.raises(ValidationError):
            await checkpoint_repo.batch_add_checkpoints(
                db_session, entity_id=entity.entity_id, items=[], actor=OWNER
            )
        items = [checkpoint_item()] * (settings.max_batch_checkpoints + 1)
        with pytest.raises(ValidationError):
            await checkpoint_repo.batch_add_checkpoints(
                db_session, entity_id=entity.entity_id, items=items, actor=OWNER
            )


@pytest.mark.unit
class TestUpdateCheckpoint:
    @pytest.mark.anyio
    async def test_disabled_by_default(self, db_session: AsyncSession, entity):
        with pytest.raises(StateError):
            await checkpoint_repo.update_checkpoint(
                db_session,
                entity_id=entity.entity_id,
                sequence=0,
                actor=OWNER,
                fields={"note": "late note"},
            )

    @pytest.mark.anyio
    async def test_update_non_ordering_fields(self, db_session: AsyncSession, entity, monkeypatch):
        monkeypatch.setattr(settings, "checkpoint_updates_enabled", True)
        original = await _add(db_session, entity.entity_id)
        timestamp = original.timestamp

        updated = await checkpoint_repo.update_checkpoint(
            db_session,
            entity_id=entity.entity_id,
            sequence=1,
            actor=OWNER,
            fields={"location": "Antwerp DC", "note": "rerouted"},
        )
        assert updated.location == "Antwerp DC"
        assert updated.note == "rerouted"
        assert updated.sequence == 1
        assert updated.timestamp == timestamp
        assert updated.status == CheckpointStatus.SHIPPED
        assert updated.updated_by == OWNER

    @pytest.mark.anyio
    @pytest.mark.parametrize("field", ["status", "sequence", "actor", "timestamp"])
    async def test_ordering_fields_rejected(
        self, db_session: AsyncSession, entity, monkeypatch, field
    ):
        monkeypatch.setattr(settings, "checkpoint_updates_enabled", True)
        with pytest.raises(ValidationError):
            await checkpoint_repo.update_checkpoint(
                db_session,
                entity_id=entity.entity_id,
                sequence=0,
                actor=OWNER,
                fields={field: "x"},
            )

    @pytest.mark.anyio
    async def test_only_recording_actor_or_admin(
        self, db_session: AsyncSession, entity, monkeypatch
    ):
        monkeypatch.setattr(settings, "checkpoint_updates_enabled", True)
        db_session.add(EntityActor(entity_id=entity.entity_id, actor=OTHER, added_by=OWNER))
        await db_session.flush()
        with pytest.raises(AuthorizationError):
            await checkpoint_repo.update_checkpoint(
                db_session,
                entity_id=entity.entity_id,
                sequence=0,
                actor=OTHER,
                fields={"note": "not mine"},
            )
        updated = await checkpoint_repo.update_checkpoint(
            db_session,
            entity_id=entity.entity_id,
            sequence=0,
            actor=ADMIN,
            fields={"note": "corrected"},
        )
        assert updated.note == "corrected"

    @pytest.mark.anyio
    async def test_unknown_sequence(self, db_session: AsyncSession, entity, monkeypatch):
        monkeypatch.setattr(settings, "checkpoint_updates_enabled", True)
        with pytest.raises(NotFoundError):
            await checkpoint_repo.update_checkpoint(
                db_session,
                entity_id=entity.entity_id,
                sequence=9,
                actor=OWNER,
                fields={"note": "x"},
            )


@pytest.mark.unit
class TestReads:
    @pytest.mark.anyio
    async def test_get_checkpoint_not_found(self, db_session: AsyncSession, entity):
        with pytest.raises(NotFoundError):
            await checkpoint_repo.get_checkpoint(db_session, entity_id=entity.entity_id, sequence=5)

    @pytest.mark.anyio
    async def test_trace_chain(self, db_session: AsyncSession, entity):
        await _add(db_session, entity.entity_id, location="Hamburg")
        await _add(db_session, entity.entity_id, status="received", location="Munich")
        links = await checkpoint_repo.get_trace_chain(db_session, entity_id=entity.entity_id)
        assert [(l.from_location, l.to_location) for l in links] == [
            ("origin", "Hamburg"),
            ("Hamburg", "Munich"),
        ]
        assert links[1].status == CheckpointStatus.RECEIVED
        assert all(l.duration_seconds >= 0 for l in links)
