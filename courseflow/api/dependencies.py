"""Request identity and platform-role guards.

Tokens are minted by the identity provider; this service only verifies
them.  Three levels of access are gated here:

    require_user           any learner, instructor or admin
    require_course_author  instructors and admins (authoring views)
    require_admin          admins (review queue, consistency sweep)

Ownership of a particular course is not a platform role; CourseLifecycle
checks it against the stored course.
"""

from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from courseflow.models.principal import ADMIN, AUTHOR_ROLES, Principal
from courseflow.services import token_service

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")


def _unauthenticated(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_user(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Verify the bearer token and turn its claims into a Principal."""
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise _unauthenticated("Token expired") from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise _unauthenticated("Invalid token") from None

    principal = Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
        name=claims.get("name", ""),
    )
    logger.debug("Token accepted user=%s roles=%s", principal.user_id, sorted(principal.roles))
    return principal


def _deny(principal: Principal, needed: str) -> HTTPException:
    logger.warning(
        "Access denied: user=%s roles=%s needs %s",
        principal.user_id,
        sorted(principal.roles),
        needed,
    )
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Insufficient permissions",
    )


def require_course_author(
    principal: Annotated[Principal, Depends(require_user)],
) -> Principal:
    if not principal.has_any_role(AUTHOR_ROLES):
        raise _deny(principal, "instructor or admin")
    return principal


def require_admin(
    principal: Annotated[Principal, Depends(require_user)],
) -> Principal:
    if not principal.has_role(ADMIN):
        raise _deny(principal, "admin")
    return principal


CurrentUser = Annotated[Principal, Depends(require_user)]
CourseAuthor = Annotated[Principal, Depends(require_course_author)]
Admin = Annotated[Principal, Depends(require_admin)]
