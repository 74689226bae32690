from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Query, status

from tracechain.api.schemas.entity import (
    EntityBatchCreate,
    EntityCountResponse,
    EntityCreate,
    EntityExpiryResponse,
    EntityResponse,
    EntitySummaryResponse,
    EntityUpdate,
)
from tracechain.core.dependencies import CurrentActor, CurrentUser, Registry
from tracechain.core.errors import ValidationError
from tracechain.domain.enums import EntityType

router = APIRouter(tags=["entities"])

Limit = Annotated[int, Query(ge=1, le=500, description="Maximum number of items")]
Offset = Annotated[int, Query(ge=0)]


@router.post("/entities", response_model=EntityResponse, status_code=status.HTTP_201_CREATED)
async def register_entity(payload: EntityCreate, service: Registry, actor: CurrentActor):
    """
    Register a new entity owned by the caller.

    Writes the registration checkpoint (sequence 0) and adds the caller to
    the entity's authorization set.
    """
    return await service.register(**payload.model_dump(), actor=actor)


@router.post(
    "/entities/batch", response_model=list[EntityResponse], status_code=status.HTTP_201_CREATED
)
async def batch_register_entities(payload: EntityBatchCreate, service: Registry, actor: CurrentActor):
    """Register several entities atomically: all are created or none."""
    return await service.batch_register(
        items=[item.model_dump() for item in payload.items], actor=actor
    )


@router.get("/entities", response_model=list[EntityResponse])
async def list_entities(
    service: Registry,
    user: CurrentUser,
    owner: Annotated[str | None, Query()] = None,
    entity_type: Annotated[EntityType | None, Query()] = None,
    actor: Annotated[str | None, Query(description="Entities this actor is authorized for")] = None,
    valid_from_start: Annotated[datetime | None, Query()] = None,
    valid_from_end: Annotated[datetime | None, Query()] = None,
    limit: Limit = 100,
    offset: Offset = 0,
):
    """
    List entities by exactly one index: owner, type, authorized actor, or
    a valid_from date range (both bounds required).
    """
    date_range = valid_from_start is not None or valid_from_end is not None
    chosen = [f for f in (owner, entity_type, actor) if f is not None]
    if len(chosen) + int(date_range) != 1:
        raise ValidationError(
            "Provide exactly one filter: owner, entity_type, actor or valid_from_start/end"
        )

    if owner is not None:
        return await service.list_by_owner(owner, limit=limit, offset=offset)
    if entity_type is not None:
        return await service.list_by_type(entity_type, limit=limit, offset=offset)
    if actor is not None:
        return await service.list_for_actor(actor, limit=limit, offset=offset)
    if valid_from_start is None or valid_from_end is None:
        raise ValidationError("Both valid_from_start and valid_from_end are required")
    return await service.list_in_date_range(
        valid_from_start, valid_from_end, limit=limit, offset=offset
    )


@router.get("/entities/count", response_model=EntityCountResponse)
async def count_entities(service: Registry, user: CurrentUser):
    return EntityCountResponse(count=await service.count())


@router.get("/entities/by-batch-key/{batch_key}", response_model=EntityResponse)
async def get_entity_by_batch_key(batch_key: str, service: Registry, user: CurrentUser):
    return await service.get_by_batch_key(batch_key)


@router.get("/entities/{entity_id}", response_model=EntityResponse)
async def get_entity(entity_id: int, service: Registry, user: CurrentUser):
    return await service.get(entity_id)


@router.patch("/entities/{entity_id}", response_model=EntityResponse)
async def update_entity(
    entity_id: int, payload: EntityUpdate, service: Registry, actor: CurrentActor
):
    """
    Update descriptive fields (owner or admin only).

    Only fields present in the body are changed.
    """
    fields = payload.model_dump(exclude_unset=True, exclude={"expected_version"})
    return await service.update_entity(
        entity_id, fields=fields, actor=actor, expected_version=payload.expected_version
    )


@router.post("/entities/{entity_id}/deactivate", response_model=EntityResponse)
async def deactivate_entity(entity_id: int, service: Registry, actor: CurrentActor):
    return await service.deactivate(entity_id, actor=actor)


@router.post("/entities/{entity_id}/reactivate", response_model=EntityResponse)
async def reactivate_entity(entity_id: int, service: Registry, actor: CurrentActor):
    return await service.reactivate(entity_id, actor=actor)


@router.get("/entities/{entity_id}/expired", response_model=EntityExpiryResponse)
async def entity_expired(
    entity_id: int,
    service: Registry,
    user: CurrentUser,
    at: Annotated[datetime | None, Query(description="Defaults to now")] = None,
):
    at = at or datetime.now(UTC)
    return EntityExpiryResponse(
        entity_id=entity_id, at=at, is_expired=await service.is_expired(entity_id, at)
    )


@router.get("/entities/{entity_id}/summary", response_model=EntitySummaryResponse)
async def entity_summary(entity_id: int, service: Registry, user: CurrentUser):
    return EntitySummaryResponse.model_validate(await service.summary(entity_id))
