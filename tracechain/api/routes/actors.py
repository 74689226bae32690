from fastapi import APIRouter, Response, status

from tracechain.api.schemas.actor import ActorAdd, ActorResponse
from tracechain.core.dependencies import CurrentActor, CurrentUser, Registry

router = APIRouter(tags=["actors"])


@router.get("/entities/{entity_id}/actors", response_model=list[ActorResponse])
async def list_actors(entity_id: int, service: Registry, user: CurrentUser):
    return await service.list_actors(entity_id)


@router.post(
    "/entities/{entity_id}/actors",
    response_model=ActorResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_actor(entity_id: int, payload: ActorAdd, service: Registry, actor: CurrentActor):
    """Authorize another actor to record checkpoints for this entity."""
    return await service.add_actor(entity_id, new_actor=payload.actor, actor=actor)


@router.delete("/entities/{entity_id}/actors/{target}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_actor(entity_id: int, target: str, service: Registry, actor: CurrentActor):
    """Revoke an actor (owner or admin only). The owner cannot be removed."""
    await service.remove_actor(entity_id, target=target, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
