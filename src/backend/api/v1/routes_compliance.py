from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends

from src.backend.domain.models.chart_record import ChartRecord
from src.backend.domain.models.compliance import ComplianceMetrics
from src.backend.security import get_api_key
from src.backend.services.compliance.service import compliance_service


router = APIRouter(
    prefix="/compliance",
    tags=["compliance"],
    dependencies=[Depends(get_api_key)],
)


@router.get("/metrics", response_model=ComplianceMetrics)
async def compliance_metrics(owner_id: Optional[str] = None) -> ComplianceMetrics:
    # Recomputed on every call; nothing is cached.
    return compliance_service.metrics(owner_id=owner_id)


@router.get("/overdue", response_model=List[ChartRecord])
async def overdue_charts(owner_id: Optional[str] = None) -> List[ChartRecord]:
    return compliance_service.list_overdue(owner_id=owner_id)


@router.get("/cosign-queue", response_model=List[ChartRecord])
async def cosign_queue(owner_id: Optional[str] = None) -> List[ChartRecord]:
    return compliance_service.cosign_queue(owner_id=owner_id)
