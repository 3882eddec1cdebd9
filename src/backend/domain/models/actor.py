from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr


class ActorRole(str, Enum):
    PROVIDER = "provider"
    SUPERVISOR = "supervisor"
    ASSISTANT = "assistant"
    SCRIBE = "scribe"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel):
    """Caller identity as resolved by the authentication layer.

    The lifecycle engine trusts this as pre-verified; it only requires that
    a name and a role are present.
    """

    actor_name: str
    actor_role: str
    email: Optional[EmailStr] = None


SYSTEM_ACTOR = Actor(actor_name="System", actor_role=ActorRole.SYSTEM.value)
