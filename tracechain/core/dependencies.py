"""
FastAPI dependency injection utilities.

Provides reusable dependencies for database sessions, the registry service,
and the authenticated actor.
"""

from typing import Annotated, Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.db import get_async_db_session, get_async_sessionmaker
from tracechain.core.observability import set_actor_id
from tracechain.core.security import get_actor_id
from tracechain.core.security import get_current_user as _get_current_user
from tracechain.services.registry_service import RegistryService

# ============================================================================
# Database Dependencies
# ============================================================================

AsyncDbSession = Annotated[AsyncSession, Depends(get_async_db_session)]


# ============================================================================
# Registry Service
# ============================================================================


def get_registry_service(request: Request) -> RegistryService:
    """
    The application's RegistryService.

    Created on first use and kept on app.state so every request shares the
    same per-entity locks.
    """
    service = getattr(request.app.state, "registry_service", None)
    if service is None:
        service = RegistryService(get_async_sessionmaker())
        request.app.state.registry_service = service
    return service


Registry = Annotated[RegistryService, Depends(get_registry_service)]


# ============================================================================
# Authentication Dependencies
# ============================================================================


def get_current_user(user: dict[str, Any] = Depends(_get_current_user)) -> dict[str, Any]:
    """
    Re-export of get_current_user from the security module.

    Usage:
        @router.get("/me")
        def me(user: CurrentUser):
            return {"actor": user["sub"]}
    """
    return user


CurrentUser = Annotated[dict[str, Any], Depends(get_current_user)]


def get_current_actor(user: CurrentUser) -> str:
    """Actor identity mutations are performed on behalf of."""
    actor = get_actor_id(user)
    set_actor_id(actor)
    return actor


CurrentActor = Annotated[str, Depends(get_current_actor)]
