"""
Common repository functions shared across multiple repos.

Holds the single authorization gate used by every mutating operation,
entity loading with row locks, and the small input checks the repos share.

All functions are async - use AsyncSession from SQLAlchemy.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.config import settings
from tracechain.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from tracechain.db.models import Entity, EntityActor, RegistryControl
from tracechain.domain.enums import EntityType

__all__ = [
    "ENTITY_NOT_FOUND",
    "is_admin",
    "is_authorized",
    "require_admin",
    "require_authorized",
    "require_owner_or_admin",
    "get_entity",
    "get_entity_for_update",
    "ensure_active",
    "is_paused",
    "ensure_not_paused",
    "require_text",
    "validate_note",
    "coerce_entity_type",
    "flush_or_conflict",
]

ENTITY_NOT_FOUND = "Entity not found"


def is_admin(actor: str) -> bool:
    return actor == settings.admin_actor


async def is_authorized(db: AsyncSession, *, entity_id: int, actor: str) -> bool:
    """True iff the actor is in the entity's authorization set or is the admin."""
    if is_admin(actor):
        return True
    stmt = select(EntityActor.actor).where(
        EntityActor.entity_id == entity_id, EntityActor.actor == actor
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def require_authorized(db: AsyncSession, *, entity: Entity, actor: str) -> None:
    """
    Gate for actions open to the entity's authorization set.

    Raises:
        AuthorizationError: If the actor is neither authorized nor the admin
    """
    if not await is_authorized(db, entity_id=entity.entity_id, actor=actor):
        raise AuthorizationError(
            "Actor is not authorized for this entity",
            details={"entity_id": entity.entity_id, "actor": actor},
        )


def require_owner_or_admin(entity: Entity, actor: str) -> None:
    """
    Gate for actions reserved to the entity's owner.

    Raises:
        AuthorizationError: If the actor is neither the owner nor the admin
    """
    if actor != entity.owner and not is_admin(actor):
        raise AuthorizationError(
            "Only the owner or the administrator may perform this action",
            details={"entity_id": entity.entity_id, "actor": actor},
        )


def require_admin(actor: str) -> None:
    if not is_admin(actor):
        raise AuthorizationError(
            "Only the administrator may perform this action", details={"actor": actor}
        )


async def get_entity(db: AsyncSession, *, entity_id: int) -> Entity:
    """Load an entity or raise NotFoundError."""
    result = await db.execute(select(Entity).where(Entity.entity_id == entity_id))
    entity = result.scalar_one_or_none()
    if entity is None:
        raise NotFoundError(ENTITY_NOT_FOUND, details={"entity_id": entity_id})
    return entity


async def get_entity_for_update(db: AsyncSession, *, entity_id: int) -> Entity:
    """
    Load an entity with a row lock for the rest of the transaction.

    FOR UPDATE is honoured by PostgreSQL and ignored by SQLite.
    """
    stmt = (
        select(Entity)
        .where(Entity.entity_id == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    entity = result.scalar_one_or_none()
    if entity is None:
        raise NotFoundError(ENTITY_NOT_FOUND, details={"entity_id": entity_id})
    return entity


def ensure_active(entity: Entity) -> None:
    if not entity.is_active:
        raise StateError("Entity is inactive", details={"entity_id": entity.entity_id})


async def is_paused(db: AsyncSession) -> bool:
    result = await db.execute(select(RegistryControl.paused).where(RegistryControl.control_id == 1))
    return bool(result.scalar_one_or_none())


async def ensure_not_paused(db: AsyncSession) -> None:
    if await is_paused(db):
        raise StateError("Registry is paused")


def require_text(value: str | None, field: str, *, max_length: int | None = None) -> str:
    """
    Reject empty (or whitespace-only) and oversized text inputs.

    Returns:
        The value unchanged
    """
    if value is None or not value.strip():
        raise ValidationError(f"{field} must not be empty", details={"field": field})
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field} exceeds {max_length} characters",
            details={"field": field, "max_length": max_length, "length": len(value)},
        )
    return value


async def flush_or_conflict(db: AsyncSession, message: str, details: dict[str, Any]) -> None:
    """Flush pending rows, reporting constraint violations as ConflictError."""
    try:
        await db.flush()
    except IntegrityError as e:
        raise ConflictError(message, details={**details, "error": str(e.orig)}) from e


def validate_note(note: str | None) -> str:
    """Free-text note; absent means empty."""
    note = note or ""
    if len(note) > settings.max_note_length:
        raise ValidationError(
            f"note exceeds {settings.max_note_length} characters", details={"length": len(note)}
        )
    return note


def coerce_entity_type(value: Any) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown entity type: {value}",
            details={"entity_type": str(value), "allowed": [t.value for t in EntityType]},
        )
