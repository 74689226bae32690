"""Tests for per-entity authorization sets."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers import ADMIN, AUDITOR, OTHER, OWNER, registration
from tracechain.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from tracechain.repos import actor_repo, common, control_repo, entity_repo


@pytest.fixture
async def entity(db_session: AsyncSession):
    return await entity_repo.register_entity(db_session, **registration(), actor=OWNER)


@pytest.mark.unit
class TestAddActor:
    @pytest.mark.anyio
    async def test_owner_adds_actor(self, db_session: AsyncSession, entity):
        version = entity.version
        membership = await actor_repo.add_actor(
            db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=OWNER
        )
        assert membership.added_by == OWNER
        assert entity.version == version + 1
        assert await common.is_authorized(db_session, entity_id=entity.entity_id, actor=OTHER)

        actors = await actor_repo.list_actors(db_session, entity_id=entity.entity_id)
        assert {a.actor for a in actors} == {OWNER, OTHER}

    @pytest.mark.anyio
    async def test_member_can_add_others(self, db_session: AsyncSession, entity):
        await actor_repo.add_actor(
            db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=OWNER
        )
        membership = await actor_repo.add_actor(
            db_session, entity_id=entity.entity_id, new_actor=AUDITOR, actor=OTHER
        )
        assert membership.added_by == OTHER

    @pytest.mark.anyio
    async def test_non_member_cannot_add(self, db_session: AsyncSession, entity):
        with pytest.raises(AuthorizationError):
            await actor_repo.add_actor(
                db_session, entity_id=entity.entity_id, new_actor=AUDITOR, actor=OTHER
            )

    @pytest.mark.anyio
    async def test_cannot_add_self(self, db_session: AsyncSession, entity):
        with pytest.raises(ConflictError):
            await actor_repo.add_actor(
                db_session, entity_id=entity.entity_id, new_actor=OWNER, actor=OWNER
            )

    @pytest.mark.anyio
    async def test_duplicate_member(self, db_session: AsyncSession, entity):
        await actor_repo.add_actor(
            db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=OWNER
        )
        with pytest.raises(ConflictError):
            await actor_repo.add_actor(
                db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=ADMIN
            )

    @pytest.mark.anyio
    async def test_empty_actor(self, db_session: AsyncSession, entity):
        with pytest.raises(ValidationError):
            await actor_repo.add_actor(
                db_session, entity_id=entity.entity_id, new_actor="  ", actor=OWNER
            )

    @pytest.mark.anyio
    async def test_inactive_entity(self, db_session: AsyncSession, entity):
        await entity_repo.deactivate_entity(db_session, entity_id=entity.entity_id, actor=OWNER)
        with pytest.raises(StateError):
            await actor_repo.add_actor(
                db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=OWNER
            )

    @pytest.mark.anyio
    async def test_paused_registry(self, db_session: AsyncSession, entity):
        await control_repo.set_paused(db_session, paused=True, actor=ADMIN)
        with pytest.raises(StateError):
            await actor_repo.add_actor(
                db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=OWNER
            )


@pytest.mark.unit
class TestRemoveActor:
    @pytest.fixture
    async def shared(self, db_session: AsyncSession, entity):
        await actor_repo.add_actor(
            db_session, entity_id=entity.entity_id, new_actor=OTHER, actor=OWNER
        )
        return entity

    @pytest.mark.anyio
    async def test_owner_removes_member(self, db_session: AsyncSession, shared):
        await actor_repo.remove_actor(
            db_session, entity_id=shared.entity_id, target=OTHER, actor=OWNER
        )
        assert not await common.is_authorized(db_session, entity_id=shared.entity_id, actor=OTHER)

    @pytest.mark.anyio
    async def test_admin_removes_member(self, db_session: AsyncSession, shared):
        await actor_repo.remove_actor(
            db_session, entity_id=shared.entity_id, target=OTHER, actor=ADMIN
        )
        actors = await actor_repo.list_actors(db_session, entity_id=shared.entity_id)
        assert [a.actor for a in actors] == [OWNER]

    @pytest.mark.anyio
    async def test_member_cannot_remove(self, db_session: AsyncSession, shared):
        with pytest.raises(AuthorizationError):
            await actor_repo.remove_actor(
                db_session, entity_id=shared.entity_id, target=OTHER, actor=OTHER
            )

    @pytest.mark.anyio
    async def test_owner_cannot_be_removed(self, db_session: AsyncSession, shared):
        with pytest.raises(ConflictError):
            await actor_repo.remove_actor(
                db_session, entity_id=shared.entity_id, target=OWNER, actor=ADMIN
            )

    @pytest.mark.anyio
    async def test_non_member(self, db_session: AsyncSession, shared):
        with pytest.raises(NotFoundError):
            await actor_repo.remove_actor(
                db_session, entity_id=shared.entity_id, target=AUDITOR, actor=OWNER
            )

    @pytest.mark.anyio
    async def test_inactive_entity(self, db_session: AsyncSession, shared):
        await entity_repo.deactivate_entity(db_session, entity_id=shared.entity_id, actor=OWNER)
        with pytest.raises(StateError):
            await actor_repo.remove_actor(
                db_session, entity_id=shared.entity_id, target=OTHER, actor=OWNER
            )
        assert await common.is_authorized(db_session, entity_id=shared.entity_id, actor=OTHER)


@pytest.mark.unit
class TestAuthorizationCheck:
    @pytest.mark.anyio
    async def test_admin_is_authorized_everywhere(self, db_session: AsyncSession, entity):
        assert await common.is_authorized(db_session, entity_id=entity.entity_id, actor=ADMIN)

    @pytest.mark.anyio
    async def test_unknown_entity_lists_nothing(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await actor_repo.list_actors(db_session, entity_id=999)
