from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import AwareDatetime, BaseModel, Field

from src.backend.domain.models.actor import Actor
from src.backend.domain.models.addendum import AddendumEntry, AddendumKind
from src.backend.domain.models.audit_entry import AuditEntry
from src.backend.domain.models.chart_record import ChartContent, ChartRecord, ChartState
from src.backend.domain.models.results import (
    AddendumResult,
    AuditChainReport,
    BulkResult,
    DocumentAccess,
    TransitionResult,
)
from src.backend.security import get_api_key, get_current_actor
from src.backend.services.charts.bulk import bulk_coordinator
from src.backend.services.charts.service import chart_service


router = APIRouter(
    prefix="/charts",
    tags=["charts"],
    dependencies=[Depends(get_api_key)],
)


class ChartCreateRequest(BaseModel):
    subject_id: str
    owner_id: Optional[str] = None
    content: Optional[ChartContent] = None
    scheduled_time: Optional[AwareDatetime] = None
    encounter_complete: bool = False
    cosign_required: bool = False


class ChartContentUpdateRequest(BaseModel):
    content: ChartContent
    encounter_complete: Optional[bool] = None


class AddendumCreateRequest(BaseModel):
    addendum_type: AddendumKind = AddendumKind.ADDENDUM
    text: Optional[str] = None
    reason: Optional[str] = None


class UnlockRequest(BaseModel):
    reason: Optional[str] = None


class BulkRequest(BaseModel):
    record_ids: List[UUID] = Field(default_factory=list)


@router.post("", response_model=ChartRecord, status_code=status.HTTP_201_CREATED)
async def create_chart(
    payload: ChartCreateRequest,
    actor: Actor = Depends(get_current_actor),
) -> ChartRecord:
    return chart_service.create_chart(
        subject_id=payload.subject_id,
        owner_id=payload.owner_id or actor.actor_name,
        content=payload.content,
        scheduled_time=payload.scheduled_time,
        encounter_complete=payload.encounter_complete,
        cosign_required=payload.cosign_required,
    )


@router.get("", response_model=List[ChartRecord])
async def list_charts(
    owner_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    state: Optional[ChartState] = None,
) -> List[ChartRecord]:
    return chart_service.list_charts(owner_id=owner_id, subject_id=subject_id, state=state)


# Handlers that render documents or fan out bulk work block for up to the
# renderer timeout, so they are plain functions and run in the threadpool.

# Bulk routes are registered before "/{record_id}/..." so "bulk" is never
# parsed as a record id.
@router.post("/bulk/sign", response_model=BulkResult)
def bulk_sign(payload: BulkRequest, actor: Actor = Depends(get_current_actor)) -> BulkResult:
    return bulk_coordinator.bulk_sign(payload.record_ids, actor)


@router.post("/bulk/close", response_model=BulkResult)
def bulk_close(payload: BulkRequest, actor: Actor = Depends(get_current_actor)) -> BulkResult:
    return bulk_coordinator.bulk_close(payload.record_ids, actor)


@router.get("/{record_id}", response_model=ChartRecord)
async def get_chart(record_id: UUID) -> ChartRecord:
    return chart_service.get_chart(record_id)


@router.put("/{record_id}/content", response_model=ChartRecord)
async def update_chart_content(record_id: UUID, payload: ChartContentUpdateRequest) -> ChartRecord:
    return chart_service.save_content(record_id, payload.content, encounter_complete=payload.encounter_complete)


@router.post("/{record_id}/preliminary", response_model=TransitionResult)
async def mark_preliminary(record_id: UUID, actor: Actor = Depends(get_current_actor)) -> TransitionResult:
    return chart_service.mark_preliminary(record_id, actor)


@router.post("/{record_id}/sign", response_model=TransitionResult)
async def sign_chart(record_id: UUID, actor: Actor = Depends(get_current_actor)) -> TransitionResult:
    return chart_service.sign_chart(record_id, actor)


@router.post("/{record_id}/close", response_model=TransitionResult)
def close_chart(record_id: UUID, actor: Actor = Depends(get_current_actor)) -> TransitionResult:
    return chart_service.close_chart(record_id, actor)


@router.post("/{record_id}/cosign", response_model=TransitionResult)
async def cosign_chart(record_id: UUID, actor: Actor = Depends(get_current_actor)) -> TransitionResult:
    return chart_service.cosign(record_id, actor)


@router.post("/{record_id}/unlock", response_model=TransitionResult)
async def unlock_chart(
    record_id: UUID,
    payload: UnlockRequest,
    actor: Actor = Depends(get_current_actor),
) -> TransitionResult:
    return chart_service.unlock_chart(record_id, actor, payload.reason)


@router.post("/{record_id}/addenda", response_model=AddendumResult, status_code=status.HTTP_201_CREATED)
def add_addendum(
    record_id: UUID,
    payload: AddendumCreateRequest,
    actor: Actor = Depends(get_current_actor),
) -> AddendumResult:
    return chart_service.add_addendum(record_id, actor, payload.addendum_type, payload.text, payload.reason)


@router.get("/{record_id}/addenda", response_model=List[AddendumEntry])
async def list_addenda(record_id: UUID) -> List[AddendumEntry]:
    return chart_service.list_addenda(record_id)


@router.get("/{record_id}/audit", response_model=List[AuditEntry])
async def get_audit_trail(record_id: UUID) -> List[AuditEntry]:
    return chart_service.get_audit_trail(record_id)


@router.get("/{record_id}/audit/verify", response_model=AuditChainReport)
async def verify_audit_trail(record_id: UUID) -> AuditChainReport:
    return chart_service.verify_audit_trail(record_id)


@router.get("/{record_id}/document", response_model=DocumentAccess)
async def get_document(
    record_id: UUID,
    action: Literal["view", "download"] = Query(default="view"),
    actor: Actor = Depends(get_current_actor),
) -> DocumentAccess:
    return chart_service.get_document(record_id, actor, download=action == "download")


@router.post("/{record_id}/document", response_model=TransitionResult)
def regenerate_document(record_id: UUID, actor: Actor = Depends(get_current_actor)) -> TransitionResult:
    return chart_service.regenerate_document(record_id, actor)
