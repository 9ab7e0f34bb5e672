"""Bearer-token guards for the admin and student routes.

Tokens are issued by the platform's auth service; this service only
verifies them (see token_service).  Three layers:

    require_user     any valid token → Principal
    require_role(r)  Principal holding role r, else 403
    require_student  the caller's numeric users.id, else 403

A missing, malformed or expired token is always 401 with
WWW-Authenticate: Bearer.
"""

from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.models.principal import Principal
from app.services import token_service

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is our 401, not FastAPI's default
bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Principal:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    try:
        claims = token_service.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise _unauthorized("Token expired") from None
    except jwt.InvalidTokenError as e:
        # Exception text only, never the token itself
        logger.warning("Invalid token rejected: %s", type(e).__name__)
        raise _unauthorized("Invalid token") from None

    principal = Principal(user_id=claims["sub"], roles=frozenset(claims.get("roles", [])))
    logger.debug("Token accepted user=%s roles=%s", principal.user_id, sorted(principal.roles))
    return principal


def require_role(role: str):
    """Dependency factory: Depends(require_role("admin"))."""

    def _guard(principal: Annotated[Principal, Depends(require_user)]) -> Principal:
        if not principal.has_role(role):
            logger.warning("Access denied: user=%s missing role=%s", principal.user_id, role)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


def require_student(principal: Annotated[Principal, Depends(require_user)]) -> int:
    """The caller's users.id.

    Student routes act on the caller's own enrollment, so the pair's
    student is always the token subject, never a request field.
    """
    student_id = principal.numeric_id()
    if student_id is None:
        logger.warning("Non-numeric subject on student endpoint: user=%s", principal.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token subject is not a platform user",
        )
    return student_id
