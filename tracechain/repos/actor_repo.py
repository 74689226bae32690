"""
Repository functions for per-entity authorization sets.

The owner is always a member and can never be removed. Members may add other
actors; only the owner or the administrator may remove them.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.audit import create_audit_log_async
from tracechain.core.errors import ConflictError, NotFoundError
from tracechain.core.events import record_event
from tracechain.core.optimistic_lock import bump_version
from tracechain.db.models import EntityActor
from tracechain.domain.enums import AuditEntityType, EventType
from tracechain.repos.common import (
    ensure_active,
    ensure_not_paused,
    flush_or_conflict,
    get_entity,
    get_entity_for_update,
    require_authorized,
    require_owner_or_admin,
    require_text,
)

logger = logging.getLogger(__name__)


async def _get_membership(db: AsyncSession, *, entity_id: int, actor: str) -> EntityActor | None:
    stmt = select(EntityActor).where(EntityActor.entity_id == entity_id, EntityActor.actor == actor)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def add_actor(db: AsyncSession, *, entity_id: int, new_actor: str, actor: str) -> EntityActor:
    """
    Add `new_actor` to the entity's authorization set.

    Raises:
        AuthorizationError: Caller is not authorized for the entity
        ValidationError: Empty new actor
        ConflictError: Caller adding itself, or new actor already a member
        StateError: Entity inactive or registry paused
    """
    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    ensure_active(entity)
    await require_authorized(db, entity=entity, actor=actor)
    new_actor = require_text(new_actor, "new_actor")

    if new_actor == actor:
        raise ConflictError("An actor cannot add itself", details={"actor": actor})
    if await _get_membership(db, entity_id=entity_id, actor=new_actor) is not None:
        raise ConflictError(
            "Actor is already authorized", details={"entity_id": entity_id, "actor": new_actor}
        )

    membership = EntityActor(
        entity_id=entity_id, actor=new_actor, added_by=actor, added_at=datetime.now(UTC)
    )
    db.add(membership)
    bump_version(entity)
    await flush_or_conflict(
        db, "Actor is already authorized", details={"entity_id": entity_id, "actor": new_actor}
    )

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.AUTHORIZATION,
        entity_id=entity_id,
        action="ADD_ACTOR",
        new_value={"actor": new_actor},
        performed_by=actor,
    )
    record_event(
        db,
        EventType.ACTOR_ADDED,
        entity_id=entity_id,
        actor=actor,
        payload={"entity_id": entity_id, "actor": new_actor, "version": entity.version},
    )
    logger.info("Actor %s added to entity %s by %s", new_actor, entity_id, actor)
    return membership


async def remove_actor(db: AsyncSession, *, entity_id: int, target: str, actor: str) -> None:
    """
    Remove `target` from the entity's authorization set.

    Raises:
        AuthorizationError: Caller is neither owner nor admin
        ConflictError: Target is the owner
        NotFoundError: Target is not a member
        StateError: Entity inactive or registry paused
    """
    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    ensure_active(entity)
    require_owner_or_admin(entity, actor)

    if target == entity.owner:
        raise ConflictError(
            "The owner cannot be removed", details={"entity_id": entity_id, "actor": target}
        )
    membership = await _get_membership(db, entity_id=entity_id, actor=target)
    if membership is None:
        raise NotFoundError(
            "Actor is not authorized for this entity",
            details={"entity_id": entity_id, "actor": target},
        )

    await db.delete(membership)
    bump_version(entity)
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.AUTHORIZATION,
        entity_id=entity_id,
        action="REMOVE_ACTOR",
        old_value={"actor": target, "added_by": membership.added_by},
        performed_by=actor,
    )
    record_event(
        db,
        EventType.ACTOR_REMOVED,
        entity_id=entity_id,
        actor=actor,
        payload={"entity_id": entity_id, "actor": target, "version": entity.version},
    )
    logger.info("Actor %s removed from entity %s by %s", target, entity_id, actor)


async def list_actors(db: AsyncSession, *, entity_id: int) -> list[EntityActor]:
    await get_entity(db, entity_id=entity_id)
    stmt = (
        select(EntityActor)
        .where(EntityActor.entity_id == entity_id)
        .order_by(EntityActor.added_at, EntityActor.actor)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
