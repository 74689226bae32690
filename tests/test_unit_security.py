"""Tests for bearer token verification and the local bypass."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from tracechain.core import security
from tracechain.core.config import settings
from tracechain.core.errors import UnauthorizedError

SECRET = "k" * 40


@pytest.fixture
def secret_key(monkeypatch):
    monkeypatch.setattr(settings, "secret_key", SECRET)
    monkeypatch.setattr(settings, "skip_jwt_validation", False)
    return SECRET


def _request(headers: dict[str, str] | None = None) -> MagicMock:
    request = MagicMock()
    request.headers = headers or {}
    return request


@pytest.mark.unit
class TestVerifyToken:
    def test_round_trip(self, secret_key):
        token = security.create_access_token("alice", claims={"role": "auditor"})
        payload = security.verify_token(token)
        assert payload["sub"] == "alice"
        assert payload["role"] == "auditor"

    def test_expired_token(self, secret_key):
        token = security.create_access_token("alice", expires_in=timedelta(seconds=-10))
        with pytest.raises(UnauthorizedError):
            security.verify_token(token)

    def test_wrong_key(self, secret_key, monkeypatch):
        token = security.create_access_token("alice")
        monkeypatch.setattr(settings, "secret_key", "x" * 40)
        with pytest.raises(UnauthorizedError):
            security.verify_token(token)

    def test_garbage_token(self, secret_key):
        with pytest.raises(UnauthorizedError):
            security.verify_token("not-a-jwt")

    def test_no_secret_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", None)
        with pytest.raises(UnauthorizedError):
            security.verify_token("anything")


@pytest.mark.unit
class TestGetCurrentUser:
    @pytest.mark.anyio
    async def test_missing_credentials(self, secret_key):
        with pytest.raises(UnauthorizedError):
            await security.get_current_user(_request(), None)

    @pytest.mark.anyio
    async def test_valid_bearer(self, secret_key):
        token = security.create_access_token("bob")
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)
        user = await security.get_current_user(_request(), creds)
        assert security.get_actor_id(user) == "bob"

    @pytest.mark.anyio
    async def test_local_bypass_reads_actor_header(self, monkeypatch):
        monkeypatch.setattr(settings, "skip_jwt_validation", True)
        user = await security.get_current_user(_request({"X-Actor-Id": "carol"}), None)
        assert user == {"sub": "carol"}

    def test_get_actor_id_requires_sub(self):
        with pytest.raises(UnauthorizedError):
            security.get_actor_id({})
