from __future__ import annotations

import hashlib
from contextvars import ContextVar
from typing import FrozenSet, Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.backend.config import settings
from src.backend.domain.models.actor import Actor, ActorRole

# API key is expected in this header when ENABLE_API_AUTH is true.
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Stable, non-raw identifier for the current caller (a hashed API key), so
# logs can correlate requests without ever seeing the secret.
_current_subject: ContextVar[Optional[str]] = ContextVar("current_subject", default=None)

# Identity used for requests without actor headers while auth is disabled.
DEV_ACTOR = Actor(actor_name="Local Developer", actor_role=ActorRole.PROVIDER.value)


def get_current_subject() -> Optional[str]:
    """Return the current subject identifier, if any."""

    return _current_subject.get()


def _configured_api_keys() -> FrozenSet[str]:
    # API_KEYS is comma-separated; blanks are ignored.
    return frozenset(key.strip() for key in (settings.api_keys or "").split(",") if key.strip())


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_api_key(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """Check the X-API-Key header against API_KEYS when ENABLE_API_AUTH is on.

    With auth off (local development and tests) every request passes and no
    subject is recorded.
    """

    if not settings.enable_api_auth:
        _current_subject.set(None)
        return ""

    allowed = _configured_api_keys()
    if not allowed:
        raise _unauthorized("API authentication is enabled but API_KEYS is empty.")
    if not api_key or api_key not in allowed:
        raise _unauthorized("Invalid or missing API key.")

    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    _current_subject.set(f"api-key:{digest[:16]}")
    return api_key


async def get_current_actor(
    api_key: str = Depends(get_api_key),
    actor_name: Optional[str] = Header(default=None, alias="X-Actor-Name"),
    actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    """Resolve the acting clinician from identity headers.

    An upstream identity provider is expected to have verified the caller and
    to forward its name and role. With auth disabled, missing headers fall
    back to a local development identity; with auth enabled they are
    required.
    """

    name = (actor_name or "").strip()
    role = (actor_role or "").strip().lower()

    if not name or not role:
        if settings.enable_api_auth:
            raise _unauthorized("X-Actor-Name and X-Actor-Role headers are required.")
        return Actor(
            actor_name=name or DEV_ACTOR.actor_name,
            actor_role=role or DEV_ACTOR.actor_role,
        )

    return Actor(actor_name=name, actor_role=role)
