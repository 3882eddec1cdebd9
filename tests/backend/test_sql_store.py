from datetime import timedelta, timezone
from uuid import uuid4

import pytest

from src.backend.domain.errors import ChartLocked, RecordNotFound
from src.backend.domain.models.addendum import AddendumKind
from src.backend.domain.models.chart_record import ChartContent, ChartState
from src.backend.infra.db.bootstrap import create_sql_chart_store
from src.backend.infra.db.models import AuditEntryORM
from src.backend.services.charts.service import ChartLifecycleService


@pytest.fixture
def sql_store():
    return create_sql_chart_store("sqlite:///:memory:")


@pytest.fixture
def sql_service(sql_store, renderer, clock):
    return ChartLifecycleService(store=sql_store, renderer=renderer, clock=clock)


def test_sql_store_full_lifecycle(sql_service, provider, soap):
    record = sql_service.create_chart(subject_id="pat-1", owner_id="Dr. Rivera", content=soap, encounter_complete=True)

    sql_service.sign_chart(record.record_id, provider)
    closed = sql_service.close_chart(record.record_id, provider).record
    sql_service.add_addendum(record.record_id, provider, AddendumKind.CORRECTION, "Weight 72kg", "Scale was off")
    unlocked = sql_service.unlock_chart(record.record_id, provider, "Patient disputes history").record

    stored = sql_service.get_chart(record.record_id)
    assert stored == unlocked
    assert stored.state == ChartState.DRAFT
    assert stored.closed_at == closed.closed_at
    assert stored.content.assessment == "Viral URI"

    trail = sql_service.get_audit_trail(record.record_id)
    assert [e.action for e in trail] == [
        "signed",
        "closed",
        "pdf_generated",
        "correction_added",
        "pdf_generated",
        "unlocked",
    ]
    assert trail[-1].reason_text == "Patient disputes history"
    assert sql_service.verify_audit_trail(record.record_id).valid is True

    (addendum,) = sql_service.list_addenda(record.record_id)
    assert addendum.kind == AddendumKind.CORRECTION
    assert addendum.reason_text == "Scale was off"


def test_sql_store_rejects_locked_edit_without_side_effects(sql_service, provider, soap):
    record = sql_service.create_chart(subject_id="pat-2", owner_id="Dr. Rivera", content=soap)
    sql_service.sign_chart(record.record_id, provider)

    with pytest.raises(ChartLocked):
        sql_service.save_content(record.record_id, ChartContent(plan="changed"))

    assert sql_service.get_chart(record.record_id).version == 1


def test_sql_compare_and_swap_checks_version(sql_store, sql_service, soap):
    record = sql_service.create_chart(subject_id="pat-3", owner_id="Dr. Rivera", content=soap)
    sql_service.save_content(record.record_id, ChartContent(plan="v1"))
    stale_update = record.model_copy(update={"version": 1, "content": ChartContent(plan="stale")})

    with sql_store.transaction(record.record_id) as tx:
        swapped = tx.compare_and_swap(ChartState.DRAFT, 0, stale_update)

    assert swapped is False
    assert sql_store.get(record.record_id).content.plan == "v1"


def test_sql_transaction_rolls_back_on_error(sql_store, sql_service, soap):
    record = sql_service.create_chart(subject_id="pat-4", owner_id="Dr. Rivera", content=soap)
    signed = record.model_copy(update={"state": ChartState.SIGNED, "version": 1})

    with pytest.raises(RuntimeError):
        with sql_store.transaction(record.record_id) as tx:
            assert tx.compare_and_swap(ChartState.DRAFT, 0, signed) is True
            raise RuntimeError("audit write failed")

    assert sql_store.get(record.record_id).state == ChartState.DRAFT


def test_sql_store_filters_and_duplicates(sql_store, sql_service, soap):
    first = sql_service.create_chart(subject_id="pat-5", owner_id="dr-x", content=soap)
    sql_service.create_chart(subject_id="pat-6", owner_id="dr-y", content=soap)

    assert [r.record_id for r in sql_store.list_by_filters(owner_id="dr-x")] == [first.record_id]
    assert list(sql_store.list_by_filters(owner_id="dr-x", state=ChartState.SIGNED)) == []

    with pytest.raises(KeyError):
        sql_store.insert(first)


def test_sql_transaction_unknown_record(sql_store):
    with pytest.raises(RecordNotFound):
        with sql_store.transaction(uuid4()):
            pass


def test_sql_audit_rows_read_back_in_utc(sql_service, provider, soap):
    record = sql_service.create_chart(subject_id="pat-1", owner_id="Dr. Rivera", content=soap)
    sql_service.sign_chart(record.record_id, provider)
    entry = sql_service.get_audit_trail(record.record_id)[0]

    row = AuditEntryORM.from_domain(entry)
    row.occurred_at = entry.occurred_at.astimezone(timezone(timedelta(hours=-4)))
    restored = row.to_domain()

    assert restored.occurred_at.utcoffset() == timedelta(0)
    assert restored.occurred_at == entry.occurred_at
    assert restored.entry_hash == entry.entry_hash
    assert sql_service.verify_audit_trail(record.record_id).valid is True
