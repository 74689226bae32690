"""
Repository functions for the Entity Store.

Registration, descriptive updates, activation toggles and the indexed read
paths. Checkpoint appends live in checkpoint_repo, authorization-set changes
in actor_repo.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.compliance.evaluator import StatusFold
from tracechain.core.audit import create_audit_log_async, snapshot_entity
from tracechain.core.config import settings
from tracechain.core.errors import ConflictError, NotFoundError, StateError, ValidationError
from tracechain.core.events import new_batch_id, record_event
from tracechain.core.optimistic_lock import bump_version, check_entity_version
from tracechain.db.models import Checkpoint, Entity, EntityActor
from tracechain.domain.enums import AuditEntityType, CheckpointStatus, EntityType, EventType
from tracechain.domain.trace_chain import trace_duration_hours
from tracechain.repos import checkpoint_repo, compliance_repo
from tracechain.repos.common import (
    coerce_entity_type,
    ensure_active,
    ensure_not_paused,
    flush_or_conflict,
    get_entity,
    get_entity_for_update,
    require_owner_or_admin,
    require_text,
)

logger = logging.getLogger(__name__)

MAX_BATCH_KEY_LENGTH = 128
ORIGIN_LOCATION = "origin"

MUTABLE_FIELDS = frozenset(
    {"name", "entity_type", "valid_from", "valid_until", "attributes", "metadata_ref"}
)
IMMUTABLE_FIELDS = frozenset({"entity_id", "batch_key", "owner"})

REGISTRATION_FIELDS = frozenset(
    {
        "name",
        "entity_type",
        "batch_key",
        "valid_from",
        "valid_until",
        "attributes",
        "metadata_ref",
        "origin_location",
    }
)


@dataclass(frozen=True)
class EntitySummary:
    entity: Entity
    is_expired: bool
    checkpoint_count: int
    actor_count: int
    latest_checkpoint: Checkpoint | None
    trace_duration_hours: float
    compliance: StatusFold

    @property
    def compliance_score(self) -> float | None:
        return self.compliance.score


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _validate_window(valid_from: Any, valid_until: Any) -> tuple[datetime, datetime]:
    if not isinstance(valid_from, datetime) or not isinstance(valid_until, datetime):
        raise ValidationError("valid_from and valid_until must be datetimes")
    valid_from, valid_until = _utc(valid_from), _utc(valid_until)
    if valid_until <= valid_from:
        raise ValidationError(
            "valid_until must be after valid_from",
            details={"valid_from": valid_from.isoformat(), "valid_until": valid_until.isoformat()},
        )
    return valid_from, valid_until


def _validate_attributes(attributes: Sequence[str] | None) -> list[str]:
    attributes = list(attributes or [])
    if len(attributes) > settings.max_attributes:
        raise ValidationError(
            f"At most {settings.max_attributes} attributes are allowed",
            details={"count": len(attributes)},
        )
    for attribute in attributes:
        if not isinstance(attribute, str):
            raise ValidationError("attributes must be strings")
        require_text(attribute, "attribute", max_length=settings.max_name_length)
    return attributes


def _validate_registration(item: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize one registration request; raises ValidationError on bad input."""
    unknown = set(item) - REGISTRATION_FIELDS
    if unknown:
        raise ValidationError("Unknown registration fields", details={"fields": sorted(unknown)})

    valid_from, valid_until = _validate_window(item.get("valid_from"), item.get("valid_until"))
    metadata_ref = item.get("metadata_ref")
    return {
        "name": require_text(item.get("name"), "name", max_length=settings.max_name_length),
        "entity_type": coerce_entity_type(item.get("entity_type")),
        "batch_key": require_text(
            item.get("batch_key"), "batch_key", max_length=MAX_BATCH_KEY_LENGTH
        ),
        "valid_from": valid_from,
        "valid_until": valid_until,
        "attributes": _validate_attributes(item.get("attributes")),
        "metadata_ref": metadata_ref or None,
        "origin_location": require_text(
            item.get("origin_location") or ORIGIN_LOCATION,
            "origin_location",
            max_length=settings.max_location_length,
        ),
    }


async def _existing_batch_keys(db: AsyncSession, batch_keys: Sequence[str]) -> list[str]:
    result = await db.execute(select(Entity.batch_key).where(Entity.batch_key.in_(batch_keys)))
    return sorted(result.scalars().all())


async def _insert_entity(
    db: AsyncSession, *, fields: dict[str, Any], actor: str, batch_id: str | None
) -> Entity:
    origin_location = fields.pop("origin_location")
    now = datetime.now(UTC)
    entity = Entity(
        **fields,
        owner=actor,
        is_active=True,
        checkpoint_count=0,
        check_count=0,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(entity)
    await flush_or_conflict(
        db, "Batch key already registered", details={"batch_key": fields["batch_key"]}
    )

    db.add(EntityActor(entity_id=entity.entity_id, actor=actor, added_by=actor, added_at=now))
    checkpoint = checkpoint_repo.append_checkpoint(
        db,
        entity=entity,
        status=CheckpointStatus.CREATED,
        location=origin_location,
        actor=actor,
        note="",
        timestamp=now,
    )
    await flush_or_conflict(
        db, "Entity registration conflicted", details={"entity_id": entity.entity_id}
    )

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.ENTITY,
        entity_id=entity.entity_id,
        action="REGISTER",
        new_value=snapshot_entity(entity),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.ENTITY_REGISTERED,
        entity_id=entity.entity_id,
        actor=actor,
        payload={
            "entity_id": entity.entity_id,
            "batch_key": entity.batch_key,
            "name": entity.name,
            "entity_type": entity.entity_type,
            "owner": entity.owner,
            "initial_checkpoint": checkpoint.sequence,
            "version": entity.version,
        },
        batch_id=batch_id,
    )
    return entity


async def register_entity(
    db: AsyncSession,
    *,
    name: str,
    entity_type: EntityType | str,
    batch_key: str,
    valid_from: datetime,
    valid_until: datetime,
    actor: str,
    attributes: Sequence[str] | None = None,
    metadata_ref: str | None = None,
    origin_location: str | None = None,
) -> Entity:
    """
    Register a new entity owned by `actor`.

    Seeds the authorization set with the owner and appends the "created"
    checkpoint at sequence 0.

    Raises:
        ValidationError: Bad input
        ConflictError: Batch key already registered
        StateError: Registry paused
    """
    await ensure_not_paused(db)
    actor = require_text(actor, "actor")
    fields = _validate_registration(
        {
            "name": name,
            "entity_type": entity_type,
            "batch_key": batch_key,
            "valid_from": valid_from,
            "valid_until": valid_until,
            "attributes": attributes,
            "metadata_ref": metadata_ref,
            "origin_location": origin_location,
        }
    )

    if await _existing_batch_keys(db, [fields["batch_key"]]):
        raise ConflictError(
            "Batch key already registered", details={"batch_key": fields["batch_key"]}
        )

    entity = await _insert_entity(db, fields=fields, actor=actor, batch_id=None)
    logger.info(
        "Registered entity %s (batch %s) for %s", entity.entity_id, entity.batch_key, actor
    )
    return entity


async def batch_register_entities(
    db: AsyncSession, *, items: Sequence[Mapping[str, Any]], actor: str
) -> list[Entity]:
    """
    Register several entities as one unit.

    Every item is validated (including batch-key uniqueness against the store
    and within the batch) before anything is written.
    """
    await ensure_not_paused(db)
    actor = require_text(actor, "actor")
    if not items:
        raise ValidationError("Batch must contain at least one item")
    if len(items) > settings.max_batch_register:
        raise ValidationError(
            f"Batch exceeds {settings.max_batch_register} items",
            details={"count": len(items), "max": settings.max_batch_register},
        )

    validated = []
    seen: set[str] = set()
    for position, item in enumerate(items):
        try:
            fields = _validate_registration(item)
        except ValidationError as e:
            e.details = {**e.details, "position": position}
            raise
        if fields["batch_key"] in seen:
            raise ConflictError(
                "Duplicate batch key within batch",
                details={"batch_key": fields["batch_key"], "position": position},
            )
        seen.add(fields["batch_key"])
        validated.append(fields)

    existing = await _existing_batch_keys(db, [f["batch_key"] for f in validated])
    if existing:
        raise ConflictError("Batch keys already registered", details={"batch_keys": existing})

    batch_id = new_batch_id()
    entities = [
        await _insert_entity(db, fields=fields, actor=actor, batch_id=batch_id)
        for fields in validated
    ]
    logger.info("Batch registered %d entities for %s", len(entities), actor)
    return entities


async def update_entity(
    db: AsyncSession,
    *,
    entity_id: int,
    fields: Mapping[str, Any],
    actor: str,
    expected_version: int | None = None,
) -> Entity:
    """
    Update descriptive fields of an active entity (owner/admin only).

    Date ordering is re-validated on the merged values. Identity fields
    (id, batch key, owner) are rejected.
    """
    await ensure_not_paused(db)
    entity = await get_entity_for_update(db, entity_id=entity_id)
    require_owner_or_admin(entity, actor)
    ensure_active(entity)
    check_entity_version(entity, expected_version)

    immutable = IMMUTABLE_FIELDS & set(fields)
    if immutable:
        raise ValidationError(
            "Identity fields cannot be changed", details={"fields": sorted(immutable)}
        )
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValidationError("Unknown entity fields", details={"fields": sorted(unknown)})
    if not fields:
        raise ValidationError("No fields to update")

    changes: dict[str, Any] = {}
    if "name" in fields:
        changes["name"] = require_text(fields["name"], "name", max_length=settings.max_name_length)
    if "entity_type" in fields:
        changes["entity_type"] = coerce_entity_type(fields["entity_type"])
    if "attributes" in fields:
        changes["attributes"] = _validate_attributes(fields["attributes"])
    if "metadata_ref" in fields:
        changes["metadata_ref"] = fields["metadata_ref"] or None
    if "valid_from" in fields or "valid_until" in fields:
        changes["valid_from"], changes["valid_until"] = _validate_window(
            fields.get("valid_from", entity.valid_from),
            fields.get("valid_until", entity.valid_until),
        )

    old_value = snapshot_entity(entity)
    for key, value in changes.items():
        setattr(entity, key, value)
    entity.updated_at = datetime.now(UTC)
    bump_version(entity)
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.ENTITY,
        entity_id=entity.entity_id,
        action="UPDATE",
        old_value=old_value,
        new_value=snapshot_entity(entity),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.ENTITY_UPDATED,
        entity_id=entity.entity_id,
        actor=actor,
        payload={
            "entity_id": entity.entity_id,
            "fields": sorted(changes),
            "version": entity.version,
        },
    )
    logger.info("Updated entity %s fields %s", entity.entity_id, sorted(changes))
    return entity


async def _set_active(db: AsyncSession, *, entity_id: int, actor: str, active: bool) -> Entity:
    await ensure_not_paused(db)
    entity = await get_entity_for_update(db, entity_id=entity_id)
    require_owner_or_admin(entity, actor)
    if entity.is_active == active:
        raise StateError(
            "Entity is already active" if active else "Entity is already inactive",
            details={"entity_id": entity_id},
        )

    old_value = snapshot_entity(entity)
    now = datetime.now(UTC)
    entity.is_active = active
    entity.deactivated_at = None if active else now
    entity.deactivated_by = None if active else actor
    entity.updated_at = now
    bump_version(entity)
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.ENTITY,
        entity_id=entity.entity_id,
        action="REACTIVATE" if active else "DEACTIVATE",
        old_value=old_value,
        new_value=snapshot_entity(entity),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.ENTITY_REACTIVATED if active else EventType.ENTITY_DEACTIVATED,
        entity_id=entity.entity_id,
        actor=actor,
        payload={"entity_id": entity.entity_id, "version": entity.version},
    )
    return entity


async def deactivate_entity(db: AsyncSession, *, entity_id: int, actor: str) -> Entity:
    return await _set_active(db, entity_id=entity_id, actor=actor, active=False)


async def reactivate_entity(db: AsyncSession, *, entity_id: int, actor: str) -> Entity:
    return await _set_active(db, entity_id=entity_id, actor=actor, active=True)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_by_batch_key(db: AsyncSession, *, batch_key: str) -> Entity:
    result = await db.execute(select(Entity).where(Entity.batch_key == batch_key))
    entity = result.scalar_one_or_none()
    if entity is None:
        raise NotFoundError("Entity not found", details={"batch_key": batch_key})
    return entity


async def list_by_owner(
    db: AsyncSession, *, owner: str, limit: int = 100, offset: int = 0
) -> list[Entity]:
    stmt = (
        select(Entity)
        .where(Entity.owner == owner)
        .order_by(Entity.entity_id)
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_by_type(
    db: AsyncSession, *, entity_type: EntityType | str, limit: int = 100, offset: int = 0
) -> list[Entity]:
    stmt = (
        select(Entity)
        .where(Entity.entity_type == coerce_entity_type(entity_type))
        .order_by(Entity.entity_id)
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_in_date_range(
    db: AsyncSession, *, start: datetime, end: datetime, limit: int = 100, offset: int = 0
) -> list[Entity]:
    """Entities whose valid_from falls within [start, end]."""
    start, end = _utc(start), _utc(end)
    if end < start:
        raise ValidationError(
            "end must not be before start",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )
    stmt = (
        select(Entity)
        .where(Entity.valid_from >= start, Entity.valid_from <= end)
        .order_by(Entity.valid_from, Entity.entity_id)
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_for_actor(
    db: AsyncSession, *, actor: str, limit: int = 100, offset: int = 0
) -> list[Entity]:
    """Entities whose authorization set contains the actor."""
    stmt = (
        select(Entity)
        .join(EntityActor, EntityActor.entity_id == Entity.entity_id)
        .where(EntityActor.actor == actor)
        .order_by(Entity.entity_id)
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_entities(db: AsyncSession) -> int:
    result = await db.execute(select(func.count()).select_from(Entity))
    return int(result.scalar_one())


def entity_is_expired(entity: Entity, at: datetime | None = None) -> bool:
    at = _utc(at) if at is not None else datetime.now(UTC)
    return at >= entity.valid_until


async def is_expired(db: AsyncSession, *, entity_id: int, at: datetime | None = None) -> bool:
    entity = await get_entity(db, entity_id=entity_id)
    return entity_is_expired(entity, at)


async def summarize(db: AsyncSession, *, entity_id: int) -> EntitySummary:
    """Derived read-only view of one entity for collaborators."""
    entity = await get_entity(db, entity_id=entity_id)
    checkpoints = await checkpoint_repo.list_checkpoints(db, entity_id=entity_id)
    actor_count = (
        await db.execute(
            select(func.count()).select_from(EntityActor).where(EntityActor.entity_id == entity_id)
        )
    ).scalar_one()
    return EntitySummary(
        entity=entity,
        is_expired=entity_is_expired(entity),
        checkpoint_count=len(checkpoints),
        actor_count=int(actor_count),
        latest_checkpoint=checkpoints[-1] if checkpoints else None,
        trace_duration_hours=trace_duration_hours(checkpoints),
        compliance=await compliance_repo.get_status(db, entity_id=entity_id),
    )
