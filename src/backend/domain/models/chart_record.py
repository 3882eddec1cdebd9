from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field, computed_field


class ChartState(str, Enum):
    DRAFT = "draft"
    PRELIMINARY = "preliminary"
    SIGNED = "signed"
    CLOSED = "closed"
    AMENDED = "amended"


LOCKED_STATES = frozenset({ChartState.SIGNED, ChartState.CLOSED, ChartState.AMENDED})


def is_locked_state(state: ChartState) -> bool:
    return state in LOCKED_STATES


class ChartContent(BaseModel):
    """Clinical documentation captured for an encounter (SOAP plus free notes)."""

    subjective: str = ""
    objective: str = ""
    assessment: str = ""
    plan: str = ""
    doctor_notes: Optional[str] = None

    def is_empty(self) -> bool:
        sections = [self.subjective, self.objective, self.assessment, self.plan, self.doctor_notes or ""]
        return not any(section.strip() for section in sections)


class ChartRecord(BaseModel):
    """Lifecycle projection of one encounter's chart.

    ``state`` is the single authoritative lifecycle position; ``locked`` is
    derived from it. The signed/closed/cosigned markers are historical facts
    and survive an unlock. The audit trail, not this record, is the source of
    truth for history.
    """

    record_id: UUID
    subject_id: str
    owner_id: str
    state: ChartState = ChartState.DRAFT
    content: ChartContent = Field(default_factory=ChartContent)

    created_at: datetime
    last_modified_at: Optional[datetime] = None
    # Offset required; naive times cannot be compared with the UTC clock.
    scheduled_time: Optional[AwareDatetime] = None
    # Whether the visit itself is over; only complete encounters are expected
    # to be charted and count towards overdue/compliance metrics.
    encounter_complete: bool = False

    signed_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    document_ref: Optional[str] = None

    cosign_required: bool = False
    cosigned_at: Optional[datetime] = None
    cosigned_by: Optional[str] = None

    # Incremented on every committed mutation; part of the compare-and-swap key.
    version: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def locked(self) -> bool:
        return is_locked_state(self.state)

    def reference_time(self) -> datetime:
        """Timestamp charting delays are measured from."""

        return self.last_modified_at or self.scheduled_time or self.created_at
