from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

from src.backend.domain.models.addendum import AddendumKind
from src.backend.domain.models.chart_record import ChartState


class AuditAction(str, Enum):
    SIGNED = "signed"
    CLOSED = "closed"
    PDF_GENERATED = "pdf_generated"
    ADDENDUM_ADDED = "addendum_added"
    LATE_ENTRY_ADDED = "late_entry_added"
    CORRECTION_ADDED = "correction_added"
    COSIGNED = "cosigned"
    UNLOCKED = "unlocked"
    MARKED_PRELIMINARY = "marked_preliminary"
    PDF_VIEWED = "pdf_viewed"
    PDF_DOWNLOADED = "pdf_downloaded"


ADDENDUM_ACTIONS: Dict[AddendumKind, AuditAction] = {
    AddendumKind.ADDENDUM: AuditAction.ADDENDUM_ADDED,
    AddendumKind.LATE_ENTRY: AuditAction.LATE_ENTRY_ADDED,
    AddendumKind.CORRECTION: AuditAction.CORRECTION_ADDED,
}


class _Details(BaseModel):
    # Unknown keys on a known kind are kept as-is.
    model_config = ConfigDict(extra="allow", frozen=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SignedDetails(_Details):
    kind: Literal["signed"] = "signed"
    signed_at: datetime


class ClosedDetails(_Details):
    kind: Literal["closed"] = "closed"
    closed_at: datetime
    document_url: Optional[str] = None
    renderer_error: Optional[str] = None


class DocumentGeneratedDetails(_Details):
    kind: Literal["pdf_generated"] = "pdf_generated"
    document_url: str
    trigger: str
    addendum_count: int = 0


class AddendumDetails(_Details):
    kind: Literal["addendum"] = "addendum"
    addendum_id: UUID
    addendum_kind: AddendumKind
    text_length: int


class CosignedDetails(_Details):
    kind: Literal["cosigned"] = "cosigned"
    cosigned_at: datetime


class UnlockedDetails(_Details):
    kind: Literal["unlocked"] = "unlocked"
    unlocked_at: datetime
    previous_state: ChartState
    new_state: ChartState = ChartState.DRAFT


class PreliminaryDetails(_Details):
    kind: Literal["preliminary"] = "preliminary"
    marked_at: datetime


class DocumentAccessDetails(_Details):
    kind: Literal["document_access"] = "document_access"
    access: Literal["view", "download"]
    document_url: str


class OpaqueDetails(BaseModel):
    """Payload of a kind this version does not understand, passed through untouched."""

    model_config = ConfigDict(frozen=True)

    kind: str
    data: Dict[str, Any] = Field(default_factory=dict)

    # Serialized flat, exactly as stored, so a dump parses back to the same entry.
    @model_serializer
    def to_payload(self) -> Dict[str, Any]:
        payload = dict(self.data)
        payload["kind"] = self.kind
        return payload


AuditDetails = Union[
    SignedDetails,
    ClosedDetails,
    DocumentGeneratedDetails,
    AddendumDetails,
    CosignedDetails,
    UnlockedDetails,
    PreliminaryDetails,
    DocumentAccessDetails,
    OpaqueDetails,
]

_KNOWN_DETAILS: Dict[str, Type[_Details]] = {
    model.model_fields["kind"].default: model
    for model in (
        SignedDetails,
        ClosedDetails,
        DocumentGeneratedDetails,
        AddendumDetails,
        CosignedDetails,
        UnlockedDetails,
        PreliminaryDetails,
        DocumentAccessDetails,
    )
}


def parse_details(payload: Optional[Dict[str, Any]]) -> AuditDetails:
    """Turn a stored details dict back into its typed variant.

    Payloads without a recognised ``kind`` become :class:`OpaqueDetails`
    with every other key preserved.
    """

    payload = dict(payload or {})
    kind = str(payload.get("kind") or "unknown")
    model = _KNOWN_DETAILS.get(kind)
    if model is not None:
        return model.model_validate(payload)
    payload.pop("kind", None)
    return OpaqueDetails(kind=kind, data=payload)


class AuditEntry(BaseModel):
    """Immutable lifecycle fact for a chart.

    Entries for one record form a hash chain: ``entry_hash`` covers the
    entry's own fields and ``prev_hash``, so editing or removing any earlier
    entry is detectable.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: UUID
    record_id: UUID
    sequence: int
    action: str
    actor_name: str
    actor_role: str
    reason_text: Optional[str] = None
    details: AuditDetails
    occurred_at: datetime
    prev_hash: Optional[str] = None
    entry_hash: str

    @field_validator("details", mode="before")
    @classmethod
    def _coerce_details(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return parse_details(value)
        return value
