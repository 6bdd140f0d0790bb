from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from progress_sync.core.config import SETTINGS
from progress_sync.db.engine import session_scope
from progress_sync.models.principal import Principal
from progress_sync.repos.pg_progress_repo import PgProgressStore
from progress_sync.repos.progress_repo import InMemoryProgressStore, ProgressStore
from progress_sync.services import token_service

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

# Single-process store used when DATABASE_URL is unset.  Tests replace it
# through reset_memory_store().
_memory_store = InMemoryProgressStore()


def memory_store() -> InMemoryProgressStore:
    return _memory_store


def reset_memory_store() -> InMemoryProgressStore:
    global _memory_store
    _memory_store = InMemoryProgressStore()
    return _memory_store


def require_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Principal:
    """Extract and validate the JWT bearer token. Returns a Principal.

    Used as a FastAPI dependency on every progress endpoint.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = token_service.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    org_id = claims.get("org_id")
    principal = Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
        org_id=str(org_id) if org_id else None,
    )
    logger.debug(
        "Token validated for user=%s roles=%s org=%s",
        principal.user_id,
        principal.roles,
        principal.org_id,
    )
    return principal


def resolve_target_user(
    principal: Principal, requested_user_id: str | None
) -> str:
    """The user whose progress a read returns.

    Learners only ever read their own; platform admins may name anyone.
    """
    if requested_user_id is None or requested_user_id == principal.user_id:
        return principal.user_id
    if principal.is_platform_admin():
        return requested_user_id
    logger.warning(
        "Access denied: user=%s asked for progress of user=%s",
        principal.user_id,
        requested_user_id,
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Cannot read another user's progress",
    )


async def get_progress_store() -> AsyncIterator[ProgressStore]:
    """Yield the store for this request.

    Durable mode opens one transaction per request.  Ingestion commits it
    before clearing cached reads; anything else commits after the handler
    returns.  Per-event failures roll back only their own savepoint.
    """
    if SETTINGS.store_mode == "memory":
        yield _memory_store
        return
    async with session_scope() as session:
        yield PgProgressStore(session)
