from datetime import datetime, timedelta, timezone
from uuid import uuid4

from src.backend.domain.models.chart_record import ChartRecord, ChartState
from src.backend.services.compliance.service import (
    ComplianceService,
    average_sign_latency,
    compliance_rate,
    compute_compliance_metrics,
    is_overdue,
    needs_cosign,
)

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def _record(state=ChartState.DRAFT, **fields):
    fields.setdefault("created_at", NOW - timedelta(days=3))
    fields.setdefault("encounter_complete", True)
    return ChartRecord(record_id=uuid4(), subject_id="pat", owner_id="dr-a", state=state, **fields)


def test_unsigned_complete_chart_becomes_overdue():
    record = _record(last_modified_at=NOW - timedelta(hours=25))

    assert is_overdue(record, NOW) is True
    assert is_overdue(record, NOW, threshold_hours=48) is False


def test_recent_or_incomplete_chart_is_not_overdue():
    assert is_overdue(_record(last_modified_at=NOW - timedelta(hours=2)), NOW) is False
    assert is_overdue(_record(encounter_complete=False), NOW) is False


def test_closed_and_amended_are_never_overdue():
    long_ago = NOW - timedelta(days=365)
    for state in (ChartState.CLOSED, ChartState.AMENDED):
        assert is_overdue(_record(state=state, created_at=long_ago), NOW) is False


def test_locked_chart_is_not_overdue():
    assert is_overdue(_record(state=ChartState.SIGNED, created_at=NOW - timedelta(days=5)), NOW) is False


def test_reference_time_priority():
    # last_modified_at wins over scheduled_time, which wins over created_at.
    fresh_edit = _record(
        last_modified_at=NOW - timedelta(hours=1),
        scheduled_time=NOW - timedelta(days=2),
    )
    scheduled_recently = _record(scheduled_time=NOW - timedelta(hours=3))

    assert is_overdue(fresh_edit, NOW) is False
    assert is_overdue(scheduled_recently, NOW) is False
    assert is_overdue(_record(), NOW) is True


def test_needs_cosign():
    assert needs_cosign(_record(cosign_required=True)) is True
    assert needs_cosign(_record(cosign_required=True, cosigned_at=NOW)) is False
    assert needs_cosign(_record()) is False


def test_average_sign_latency():
    records = [
        _record(state=ChartState.SIGNED, last_modified_at=NOW - timedelta(hours=2), signed_at=NOW),
        _record(state=ChartState.CLOSED, last_modified_at=NOW - timedelta(hours=4), signed_at=NOW),
        _record(),
    ]

    assert average_sign_latency(records) == 3 * 3600


def test_average_sign_latency_without_signatures():
    assert average_sign_latency([_record(), _record()]) == 0.0
    assert average_sign_latency([]) == 0.0


def test_compliance_rate():
    records = [
        _record(state=ChartState.CLOSED),
        _record(state=ChartState.AMENDED),
        _record(state=ChartState.SIGNED),
        _record(state=ChartState.DRAFT),
        _record(state=ChartState.CLOSED, encounter_complete=False),
    ]

    assert compliance_rate(records) == 0.5


def test_compliance_rate_without_eligible_records():
    assert compliance_rate([]) == 1.0
    assert compliance_rate([_record(encounter_complete=False)]) == 1.0


def test_compute_compliance_metrics():
    records = [
        _record(last_modified_at=NOW - timedelta(hours=30)),
        _record(state=ChartState.SIGNED, last_modified_at=NOW - timedelta(hours=1), signed_at=NOW, cosign_required=True),
        _record(state=ChartState.CLOSED, last_modified_at=NOW - timedelta(hours=3), signed_at=NOW),
    ]

    metrics = compute_compliance_metrics(records, NOW)

    assert metrics.overdue_count == 1
    assert metrics.needs_cosign_count == 1
    assert metrics.average_sign_latency_seconds == 2 * 3600
    assert metrics.compliance_rate == 1 / 3
    assert metrics.total_records == 3
    assert metrics.state_counts[ChartState.DRAFT] == 1
    assert metrics.state_counts[ChartState.AMENDED] == 0


def test_compliance_service_reads_store(service, draft, provider, supervisor, soap):
    cosign = service.create_chart(subject_id="pat-2", owner_id="Dr. Rivera", content=soap, cosign_required=True)
    service.sign_chart(draft.record_id, provider)
    service.close_chart(draft.record_id, provider)

    compliance = ComplianceService(store=service.store)
    metrics = compliance.metrics(owner_id="Dr. Rivera")

    assert metrics.total_records == 2
    assert metrics.state_counts[ChartState.CLOSED] == 1
    assert [r.record_id for r in compliance.cosign_queue(owner_id="Dr. Rivera")] == [cosign.record_id]
    assert compliance.list_overdue(owner_id="Dr. Rivera", now=datetime.now(timezone.utc)) == []

    service.cosign(cosign.record_id, supervisor)
    assert compliance.cosign_queue() == []
