"""
Repository functions for the checkpoint log.

Each entity owns a gapless, append-only sequence of checkpoints. The next
sequence number is the entity's `checkpoint_count`, advanced in the same
transaction as the insert; the (entity_id, sequence) primary key rejects any
interleaving that slips past the entity lock.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.audit import create_audit_log_async, snapshot_entity
from tracechain.core.config import settings
from tracechain.core.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from tracechain.core.events import new_batch_id, record_event
from tracechain.core.optimistic_lock import bump_version
from tracechain.db.models import Checkpoint, Entity
from tracechain.domain.enums import AuditEntityType, CheckpointStatus, EventType
from tracechain.domain.trace_chain import TraceLink, build_trace_chain
from tracechain.repos.common import (
    ensure_active,
    ensure_not_paused,
    flush_or_conflict,
    get_entity,
    get_entity_for_update,
    is_admin,
    require_authorized,
    require_text,
    validate_note,
)

logger = logging.getLogger(__name__)

CHECKPOINT_FIELDS = frozenset(
    {"status", "location", "note", "temperature", "humidity", "latitude", "longitude"}
)
READING_FIELDS = ("temperature", "humidity", "latitude", "longitude")


def _coerce_status(value: Any) -> CheckpointStatus:
    try:
        status = CheckpointStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown checkpoint status: {value}",
            details={"status": str(value), "allowed": [s.value for s in CheckpointStatus]},
        )
    if status == CheckpointStatus.CREATED:
        raise ValidationError("Status 'created' is reserved for registration")
    return status


def _validate_readings(readings: Mapping[str, Any]) -> dict[str, float | None]:
    """Environmental readings and coordinates; all optional, coordinates come in pairs."""
    values: dict[str, float | None] = {}
    for key in READING_FIELDS:
        value = readings.get(key)
        if value is not None:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{key} must be a number", details={"field": key})
            value = float(value)
        values[key] = value

    if values["humidity"] is not None and not 0 <= values["humidity"] <= 100:
        raise ValidationError("humidity must be between 0 and 100")
    if (values["latitude"] is None) != (values["longitude"] is None):
        raise ValidationError("latitude and longitude must be given together")
    if values["latitude"] is not None and not -90 <= values["latitude"] <= 90:
        raise ValidationError("latitude must be between -90 and 90")
    if values["longitude"] is not None and not -180 <= values["longitude"] <= 180:
        raise ValidationError("longitude must be between -180 and 180")
    return values


def _validate_checkpoint(item: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(item) - CHECKPOINT_FIELDS
    if unknown:
        raise ValidationError("Unknown checkpoint fields", details={"fields": sorted(unknown)})
    return {
        "status": _coerce_status(item.get("status")),
        "location": require_text(
            item.get("location"), "location", max_length=settings.max_location_length
        ),
        "note": validate_note(item.get("note")),
        **_validate_readings(item),
    }


def append_checkpoint(
    db: AsyncSession,
    *,
    entity: Entity,
    status: CheckpointStatus,
    location: str,
    actor: str,
    note: str = "",
    timestamp: datetime | None = None,
    **readings: float | None,
) -> Checkpoint:
    """Add the next checkpoint for a locked entity and advance its counter."""
    checkpoint = Checkpoint(
        entity_id=entity.entity_id,
        sequence=entity.checkpoint_count,
        timestamp=timestamp or datetime.now(UTC),
        location=location,
        actor=actor,
        status=status,
        note=note,
        **readings,
    )
    db.add(checkpoint)
    entity.checkpoint_count += 1
    return checkpoint


async def _record_added(
    db: AsyncSession, *, entity: Entity, checkpoint: Checkpoint, actor: str, batch_id: str | None
) -> None:
    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.CHECKPOINT,
        entity_id=f"{entity.entity_id}:{checkpoint.sequence}",
        action="ADD_CHECKPOINT",
        new_value=snapshot_entity(checkpoint),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.CHECKPOINT_ADDED,
        entity_id=entity.entity_id,
        actor=actor,
        payload={
            "entity_id": entity.entity_id,
            "sequence": checkpoint.sequence,
            "status": checkpoint.status,
            "location": checkpoint.location,
            "version": entity.version,
        },
        batch_id=batch_id,
    )


async def _load_for_append(db: AsyncSession, *, entity_id: int, actor: str) -> Entity:
    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    ensure_active(entity)
    await require_authorized(db, entity=entity, actor=actor)
    return entity


async def add_checkpoint(
    db: AsyncSession,
    *,
    entity_id: int,
    status: CheckpointStatus | str,
    location: str,
    actor: str,
    note: str | None = None,
    temperature: float | None = None,
    humidity: float | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
) -> Checkpoint:
    """
    Append a checkpoint at the entity's next sequence number.

    Raises:
        NotFoundError: Unknown entity
        StateError: Entity inactive or registry paused
        AuthorizationError: Actor not in the authorization set
        ValidationError: Bad status, location, note or readings
    """
    entity = await _load_for_append(db, entity_id=entity_id, actor=actor)
    fields = _validate_checkpoint(
        {
            "status": status,
            "location": location,
            "note": note,
            "temperature": temperature,
            "humidity": humidity,
            "latitude": latitude,
            "longitude": longitude,
        }
    )

    checkpoint = append_checkpoint(db, entity=entity, actor=actor, **fields)
    bump_version(entity)
    entity.updated_at = checkpoint.timestamp
    await flush_or_conflict(
        db,
        "Checkpoint sequence already taken",
        details={"entity_id": entity_id, "sequence": checkpoint.sequence},
    )
    await _record_added(db, entity=entity, checkpoint=checkpoint, actor=actor, batch_id=None)

    logger.info(
        "Added checkpoint %s to entity %s (%s)",
        checkpoint.sequence,
        entity_id,
        checkpoint.status.value,
    )
    return checkpoint


async def batch_add_checkpoints(
    db: AsyncSession, *, entity_id: int, items: Sequence[Mapping[str, Any]], actor: str
) -> list[Checkpoint]:
    """
    Append several checkpoints as one unit, at consecutive sequence numbers.

    All items are validated before anything is written.
    """
    entity = await _load_for_append(db, entity_id=entity_id, actor=actor)
    if not items:
        raise ValidationError("Batch must contain at least one item")
    if len(items) > settings.max_batch_checkpoints:
        raise ValidationError(
            f"Batch exceeds {settings.max_batch_checkpoints} items",
            details={"count": len(items), "max": settings.max_batch_checkpoints},
        )

    validated = []
    for position, item in enumerate(items):
        try:
            validated.append(_validate_checkpoint(item))
        except ValidationError as e:
            e.details = {**e.details, "position": position}
            raise

    batch_id = new_batch_id()
    now = datetime.now(UTC)
    checkpoints = [
        append_checkpoint(db, entity=entity, actor=actor, timestamp=now, **fields)
        for fields in validated
    ]
    bump_version(entity)
    entity.updated_at = now
    await flush_or_conflict(
        db, "Checkpoint sequence already taken", details={"entity_id": entity_id}
    )
    for checkpoint in checkpoints:
        await _record_added(
            db, entity=entity, checkpoint=checkpoint, actor=actor, batch_id=batch_id
        )

    logger.info("Batch added %d checkpoints to entity %s", len(checkpoints), entity_id)
    return checkpoints


async def update_checkpoint(
    db: AsyncSession,
    *,
    entity_id: int,
    sequence: int,
    actor: str,
    fields: Mapping[str, Any],
) -> Checkpoint:
    """
    Edit non-ordering fields (location, note, readings) of a committed checkpoint.

    Only available when CHECKPOINT_UPDATES_ENABLED is set, and only to the
    checkpoint's original actor or the admin. Sequence, status, actor and
    timestamp never change.
    """
    if not settings.checkpoint_updates_enabled:
        raise StateError("Checkpoint updates are disabled")

    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    ensure_active(entity)
    checkpoint = await get_checkpoint(db, entity_id=entity_id, sequence=sequence)
    if actor != checkpoint.actor and not is_admin(actor):
        raise AuthorizationError(
            "Only the recording actor or the administrator may update a checkpoint",
            details={"entity_id": entity_id, "sequence": sequence, "actor": actor},
        )

    allowed = {"location", "note", *READING_FIELDS}
    rejected = set(fields) - allowed
    if rejected:
        raise ValidationError(
            "Only location, note and readings can be updated",
            details={"fields": sorted(rejected)},
        )
    if not fields:
        raise ValidationError("No fields to update")

    changes: dict[str, Any] = {}
    if "location" in fields:
        changes["location"] = require_text(
            fields["location"], "location", max_length=settings.max_location_length
        )
    if "note" in fields:
        changes["note"] = validate_note(fields["note"])
    if any(key in fields for key in READING_FIELDS):
        merged = {key: fields.get(key, getattr(checkpoint, key)) for key in READING_FIELDS}
        changes.update(_validate_readings(merged))

    old_value = snapshot_entity(checkpoint)
    now = datetime.now(UTC)
    for key, value in changes.items():
        setattr(checkpoint, key, value)
    checkpoint.updated_at = now
    checkpoint.updated_by = actor
    bump_version(entity)
    entity.updated_at = now
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.CHECKPOINT,
        entity_id=f"{entity_id}:{sequence}",
        action="UPDATE_CHECKPOINT",
        old_value=old_value,
        new_value=snapshot_entity(checkpoint),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.CHECKPOINT_UPDATED,
        entity_id=entity_id,
        actor=actor,
        payload={
            "entity_id": entity_id,
            "sequence": sequence,
            "fields": sorted(changes),
            "version": entity.version,
        },
    )
    return checkpoint


async def list_checkpoints(db: AsyncSession, *, entity_id: int) -> list[Checkpoint]:
    """All checkpoints of an entity in sequence order."""
    await get_entity(db, entity_id=entity_id)
    stmt = (
        select(Checkpoint)
        .where(Checkpoint.entity_id == entity_id)
        .order_by(Checkpoint.sequence.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_checkpoint(db: AsyncSession, *, entity_id: int, sequence: int) -> Checkpoint:
    stmt = select(Checkpoint).where(
        Checkpoint.entity_id == entity_id, Checkpoint.sequence == sequence
    )
    result = await db.execute(stmt)
    checkpoint = result.scalar_one_or_none()
    if checkpoint is None:
        await get_entity(db, entity_id=entity_id)
        raise NotFoundError(
            "Checkpoint not found", details={"entity_id": entity_id, "sequence": sequence}
        )
    return checkpoint


async def get_trace_chain(db: AsyncSession, *, entity_id: int) -> list[TraceLink]:
    return build_trace_chain(await list_checkpoints(db, entity_id=entity_id))
