"""
Bearer Token Verification

Tokens are issued by the identity provider that fronts the web client and
signed with a shared secret (JWT_SECRET, HS256 by default). This service
only verifies them; it never issues tokens or manages users.

Claims used:
  sub    opaque user id; every document and conversation is owned by it
  exp    expiry, verified when present
  email  optional, informational only
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from docchat.core.config import Settings
from docchat.schemas.common import ApiErrors

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTP Bearer extractor
# ---------------------------------------------------------------------------

# auto_error=False: missing credentials get our 401 envelope, not a bare 403
bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:   str
    email: str        = ""
    exp:   int | None = None


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=ApiErrors.unauthorized(message).model_dump(mode="json"),
        headers={"WWW-Authenticate": "Bearer"},
    )


# ---------------------------------------------------------------------------
# Main verification function
# ---------------------------------------------------------------------------

def verify_token(token: str, settings: Settings) -> TokenPayload:
    """
    Verify signature and expiry, then return the typed payload.
    Raises HTTPException(401) on any failure.
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError as exc:
        logger.info("Token rejected | reason=%s", exc)
        raise _unauthorized("Invalid token")

    sub = claims.get("sub")
    if not sub or not isinstance(sub, str):
        raise _unauthorized("Token missing sub claim")

    return TokenPayload(sub=sub, email=claims.get("email") or "", exp=claims.get("exp"))


def create_access_token(sub: str, settings: Settings, **claims) -> str:
    """Sign a token the way the identity provider does. Used by tooling and tests."""
    return jwt.encode({"sub": sub, **claims}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_current_user(
    request:     Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenPayload:
    """
    FastAPI dependency that extracts and validates the Bearer token.
    Inject into any route that requires authentication:

        @router.get("/documents")
        async def list_docs(user: CurrentUser):
            ...
    """
    if credentials is None:
        raise _unauthorized("Missing or invalid Authorization header.")
    return verify_token(credentials.credentials, request.app.state.settings)
