from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.backend.domain.models.addendum import AddendumEntry
from src.backend.domain.models.chart_record import ChartRecord, ChartState


class TransitionWarning(BaseModel):
    code: str
    detail: str


class TransitionResult(BaseModel):
    """Outcome of a committed transition, returned to the caller.

    Notification fan-out (toasts, presence updates) is up to the caller; the
    engine only reports what happened.
    """

    record: ChartRecord
    action: str
    warnings: List[TransitionWarning] = Field(default_factory=list)

    @property
    def document_url(self) -> Optional[str]:
        return self.record.document_ref


class AddendumResult(TransitionResult):
    addendum: AddendumEntry


class DocumentAccess(BaseModel):
    record_id: UUID
    document_url: str
    state: ChartState


class PerRecordResult(BaseModel):
    record_id: UUID
    success: bool
    state: Optional[ChartState] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    warnings: List[TransitionWarning] = Field(default_factory=list)


class BulkResult(BaseModel):
    action: str
    success_count: int
    failure_count: int
    results: List[PerRecordResult]


class AuditChainReport(BaseModel):
    record_id: UUID
    valid: bool
    entry_count: int
    broken_at_sequence: Optional[int] = None
