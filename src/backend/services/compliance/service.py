"""Read-only charting compliance metrics.

Everything is recomputed from the records passed in; nothing is cached or
written back.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from src.backend.config import settings
from src.backend.domain.models.chart_record import ChartRecord, ChartState
from src.backend.domain.models.compliance import ComplianceMetrics
from src.backend.infra.db import inmemory as inmemory_repos
from src.backend.infra.db.repositories import ChartStore

COMPLETED_STATES = frozenset({ChartState.CLOSED, ChartState.AMENDED})


def _threshold(hours: Optional[float]) -> timedelta:
    return timedelta(hours=settings.overdue_threshold_hours if hours is None else hours)


def is_overdue(record: ChartRecord, now: datetime, threshold_hours: Optional[float] = None) -> bool:
    """True when a finished encounter's chart has sat unlocked past the threshold."""

    if record.locked or not record.encounter_complete:
        return False
    if record.state in COMPLETED_STATES:
        return False
    return now - record.reference_time() > _threshold(threshold_hours)


def needs_cosign(record: ChartRecord) -> bool:
    return record.cosign_required and record.cosigned_at is None


def average_sign_latency(records: Iterable[ChartRecord]) -> float:
    """Mean seconds from reference time to signature over signed records; 0.0 if none.

    Records edited after their signature (reference time later than
    signed_at, e.g. after an unlock) are left out.
    """

    durations: List[timedelta] = []
    for record in records:
        if record.signed_at is None:
            continue
        reference = record.reference_time()
        if reference <= record.signed_at:
            durations.append(record.signed_at - reference)
    if not durations:
        return 0.0
    return sum(d.total_seconds() for d in durations) / len(durations)


def compliance_rate(records: Iterable[ChartRecord]) -> float:
    """Share of completion-eligible charts that reached closed/amended; 1.0 if none are eligible."""

    eligible = [r for r in records if r.encounter_complete]
    if not eligible:
        return 1.0
    completed = sum(1 for r in eligible if r.state in COMPLETED_STATES)
    return completed / len(eligible)


def compute_compliance_metrics(
    records: Iterable[ChartRecord],
    now: Optional[datetime] = None,
    threshold_hours: Optional[float] = None,
) -> ComplianceMetrics:
    records = list(records)
    now = now or datetime.now(timezone.utc)
    counts = Counter(r.state for r in records)
    return ComplianceMetrics(
        overdue_count=sum(1 for r in records if is_overdue(r, now, threshold_hours)),
        needs_cosign_count=sum(1 for r in records if needs_cosign(r)),
        average_sign_latency_seconds=average_sign_latency(records),
        compliance_rate=compliance_rate(records),
        total_records=len(records),
        state_counts={state: counts.get(state, 0) for state in ChartState},
    )


class ComplianceService:
    """Store-backed convenience wrapper used by the compliance API."""

    def __init__(self, store: Optional[ChartStore] = None) -> None:
        self._store = store

    @property
    def store(self) -> ChartStore:
        return self._store or inmemory_repos.chart_store

    def metrics(self, *, owner_id: Optional[str] = None, now: Optional[datetime] = None) -> ComplianceMetrics:
        return compute_compliance_metrics(self.store.list_by_filters(owner_id=owner_id), now)

    def list_overdue(self, *, owner_id: Optional[str] = None, now: Optional[datetime] = None) -> List[ChartRecord]:
        now = now or datetime.now(timezone.utc)
        return [r for r in self.store.list_by_filters(owner_id=owner_id) if is_overdue(r, now)]

    def cosign_queue(self, *, owner_id: Optional[str] = None) -> List[ChartRecord]:
        return [r for r in self.store.list_by_filters(owner_id=owner_id) if needs_cosign(r)]


compliance_service = ComplianceService()
