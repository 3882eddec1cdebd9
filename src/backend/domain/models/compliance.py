from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, Field

from src.backend.domain.models.chart_record import ChartState


class ComplianceMetrics(BaseModel):
    overdue_count: int
    needs_cosign_count: int
    average_sign_latency_seconds: float
    # Fraction in [0, 1]; 1.0 when no encounter is eligible yet.
    compliance_rate: float
    total_records: int
    state_counts: Dict[ChartState, int] = Field(default_factory=dict)
