"""
Pytest configuration and shared fixtures.

Provides:
- A throwaway SQLite database per test (aiosqlite, schema from the models)
- `db_session` for repository-level tests
- `service`: a RegistryService whose published events are collected
- `client`: httpx AsyncClient over the ASGI app with the registry service,
  database session and current user overridden

The caller identity in API tests comes from the `X-Actor-Id` header
(default "alice"), so one client can act as several actors. Test data
helpers live in tests/helpers.py.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from typing import Any

# Settings are read at import time
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("OBSERVABILITY_STRUCTURED_LOGS", "false")

import httpx  # noqa: E402 (import after env setup)
import pytest  # noqa: E402 (import after env setup)
from fastapi import Request  # noqa: E402 (import after env setup)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from tests.helpers import OWNER, RecordingPublisher  # noqa: E402
from tracechain.core.db import (  # noqa: E402 (import after env setup)
    build_sessionmaker,
    create_fresh_async_engine,
    get_async_db_session,
    init_models,
)
from tracechain.core.dependencies import (  # noqa: E402 (import after env setup)
    get_current_user,
    get_registry_service,
)
from tracechain.main import create_app  # noqa: E402 (import after env setup)
from tracechain.services.registry_service import RegistryService  # noqa: E402


# =============================================================================
# Per AnyIO testing docs: https://anyio.readthedocs.io/en/stable/testing.html
@pytest.fixture
def anyio_backend():
    return "asyncio"


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite file database with the full schema."""
    engine = create_fresh_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}", echo=False
    )
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest.fixture
async def db_session(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Session for repository tests.

    Do not combine with `service` in one test: SQLite allows a single writer
    and this session holds its transaction until the test ends.
    """
    async with sessionmaker() as session:
        yield session
        await session.rollback()


# =============================================================================
# Service and API fixtures
# =============================================================================


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def service(
    sessionmaker: async_sessionmaker[AsyncSession], publisher: RecordingPublisher
) -> RegistryService:
    return RegistryService(sessionmaker, publisher=publisher)


@pytest.fixture
async def client(
    service: RegistryService, sessionmaker: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """AsyncClient whose caller is taken from the X-Actor-Id header."""
    app = create_app()

    async def override_get_async_db():
        async with sessionmaker() as session:
            yield session

    async def override_get_current_user(request: Request) -> dict[str, Any]:
        return {"sub": request.headers.get("X-Actor-Id", OWNER)}

    app.dependency_overrides[get_registry_service] = lambda: service
    app.dependency_overrides[get_async_db_session] = override_get_async_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
