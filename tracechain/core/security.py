"""
Bearer token authentication.

Tokens are HS256 JWTs signed with SECRET_KEY; the `sub` claim is the actor
identity every mutation is performed on behalf of. Issuing tokens belongs to
an upstream identity service; `create_access_token` exists for operators and
tests.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from tracechain.core.config import settings
from tracechain.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)

INVALID_OR_EXPIRED_TOKEN_MSG = "Invalid or expired token"
ACTOR_HEADER = "X-Actor-Id"
LOCAL_DEV_ACTOR = "local-dev-user"

_optional_security = HTTPBearer(auto_error=False)


def create_access_token(
    subject: str, *, expires_in: timedelta = timedelta(hours=1), claims: dict | None = None
) -> str:
    """Sign a bearer token for `subject`."""
    if not settings.secret_key:
        raise RuntimeError("SECRET_KEY is required to issue tokens")
    now = datetime.now(UTC)
    payload = {**(claims or {}), "sub": subject, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify a bearer token and return the decoded payload.

    Raises:
        UnauthorizedError: If the token is invalid, expired, or no key is configured
    """
    if not settings.secret_key:
        logger.error("SECRET_KEY is not configured; rejecting bearer token")
        raise UnauthorizedError(INVALID_OR_EXPIRED_TOKEN_MSG)

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        logger.warning("Token has expired")
        raise UnauthorizedError(INVALID_OR_EXPIRED_TOKEN_MSG)
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise UnauthorizedError(INVALID_OR_EXPIRED_TOKEN_MSG)

    if not payload.get("sub"):
        logger.warning("JWT payload missing 'sub' claim")
        raise UnauthorizedError("Invalid token - missing actor identifier")
    return payload


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_optional_security),
) -> dict[str, Any]:
    """
    FastAPI dependency returning the verified token payload.

    With SECURITY_SKIP_JWT_VALIDATION (local only) the actor is taken from the
    X-Actor-Id header instead.
    """
    if settings.skip_jwt_validation:
        actor = request.headers.get(ACTOR_HEADER) or LOCAL_DEV_ACTOR
        logger.debug("JWT validation bypassed for local development", extra={"actor": actor})
        return {"sub": actor}

    if credentials is None:
        logger.warning("Missing Authorization header")
        raise UnauthorizedError(INVALID_OR_EXPIRED_TOKEN_MSG)

    return verify_token(credentials.credentials)


def get_actor_id(user: dict[str, Any]) -> str:
    """Actor identity (the `sub` claim) of an authenticated user."""
    sub = user.get("sub")
    if not sub:
        raise UnauthorizedError("Invalid token - missing actor identifier")
    return str(sub)
