from __future__ import annotations

from fastapi import APIRouter, status

from tracechain.api.schemas.checkpoint import (
    CheckpointBatchCreate,
    CheckpointCreate,
    CheckpointResponse,
    CheckpointUpdate,
    TraceLinkResponse,
)
from tracechain.core.dependencies import CurrentActor, CurrentUser, Registry

router = APIRouter(tags=["checkpoints"])


@router.post(
    "/entities/{entity_id}/checkpoints",
    response_model=CheckpointResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_checkpoint(
    entity_id: int, payload: CheckpointCreate, service: Registry, actor: CurrentActor
):
    """
    Append a checkpoint to the entity's custody log.

    The caller must be in the entity's authorization set (or be the admin).
    """
    return await service.add_checkpoint(entity_id, **payload.model_dump(), actor=actor)


@router.post(
    "/entities/{entity_id}/checkpoints/batch",
    response_model=list[CheckpointResponse],
    status_code=status.HTTP_201_CREATED,
)
async def batch_add_checkpoints(
    entity_id: int, payload: CheckpointBatchCreate, service: Registry, actor: CurrentActor
):
    return await service.batch_add_checkpoints(
        entity_id,
        items=[item.model_dump(exclude_none=True) for item in payload.items],
        actor=actor,
    )


@router.get("/entities/{entity_id}/checkpoints", response_model=list[CheckpointResponse])
async def list_checkpoints(entity_id: int, service: Registry, user: CurrentUser):
    return await service.get_checkpoints(entity_id)


@router.get(
    "/entities/{entity_id}/checkpoints/{sequence}", response_model=CheckpointResponse
)
async def get_checkpoint(entity_id: int, sequence: int, service: Registry, user: CurrentUser):
    return await service.get_checkpoint(entity_id, sequence)


@router.patch(
    "/entities/{entity_id}/checkpoints/{sequence}", response_model=CheckpointResponse
)
async def update_checkpoint(
    entity_id: int,
    sequence: int,
    payload: CheckpointUpdate,
    service: Registry,
    actor: CurrentActor,
):
    """Edit location, note or readings (when checkpoint updates are enabled)."""
    return await service.update_checkpoint(
        entity_id, sequence, fields=payload.model_dump(exclude_unset=True), actor=actor
    )


@router.get("/entities/{entity_id}/trace-chain", response_model=list[TraceLinkResponse])
async def get_trace_chain(entity_id: int, service: Registry, user: CurrentUser):
    links = await service.get_trace_chain(entity_id)
    return [TraceLinkResponse.model_validate(link) for link in links]
