from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AddendumKind(str, Enum):
    ADDENDUM = "addendum"
    LATE_ENTRY = "late_entry"
    CORRECTION = "correction"


class AddendumEntry(BaseModel):
    """Append-only amendment to a locked chart.

    Corrections never rewrite history; each one is a new entry that is
    rendered after the original content.
    """

    model_config = ConfigDict(frozen=True)

    addendum_id: UUID
    record_id: UUID
    kind: AddendumKind
    body_text: str
    reason_text: Optional[str] = None
    author_name: str
    author_role: str
    created_at: datetime
