from fastapi import APIRouter

from tracechain.api.schemas.admin import RegistryStateResponse
from tracechain.core.dependencies import CurrentActor, CurrentUser, Registry

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/pause", response_model=RegistryStateResponse)
async def pause_registry(service: Registry, actor: CurrentActor):
    """Block every entity and compliance mutation. Administrator only."""
    return await service.pause(actor=actor)


@router.post("/unpause", response_model=RegistryStateResponse)
async def unpause_registry(service: Registry, actor: CurrentActor):
    return await service.unpause(actor=actor)


@router.get("/state", response_model=RegistryStateResponse)
async def registry_state(service: Registry, user: CurrentUser):
    return await service.registry_state()
