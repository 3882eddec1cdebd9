from datetime import datetime, timedelta, timezone
from uuid import uuid4

from src.backend.domain.models.actor import Actor
from src.backend.domain.models.addendum import AddendumKind
from src.backend.domain.models.audit_entry import (
    AuditEntry,
    OpaqueDetails,
    SignedDetails,
    UnlockedDetails,
    parse_details,
)
from src.backend.domain.models.chart_record import ChartState
from src.backend.services.audit.service import AuditService, audit_service


def test_chain_verifies_after_lifecycle(service, draft, provider):
    record_id = draft.record_id
    service.sign_chart(record_id, provider)
    service.close_chart(record_id, provider)
    service.add_addendum(record_id, provider, AddendumKind.CORRECTION, "BP was 128/82", "Misread the monitor")
    service.unlock_chart(record_id, provider, "Update allergy list")

    report = service.verify_audit_trail(record_id)

    assert report.valid is True
    assert report.entry_count == 6
    assert report.broken_at_sequence is None


def test_chain_detects_edited_entry(service, draft, provider):
    service.sign_chart(draft.record_id, provider)
    service.close_chart(draft.record_id, provider)
    entries = service.get_audit_trail(draft.record_id)

    tampered = list(entries)
    tampered[1] = entries[1].model_copy(update={"actor_name": "Someone Else"})

    report = audit_service.verify_chain(draft.record_id, tampered)
    assert report.valid is False
    assert report.broken_at_sequence == 2


def test_chain_detects_removed_entry(service, draft, provider):
    service.sign_chart(draft.record_id, provider)
    service.close_chart(draft.record_id, provider)
    entries = service.get_audit_trail(draft.record_id)

    report = audit_service.verify_chain(draft.record_id, [entries[0], entries[2]])

    assert report.valid is False
    assert report.broken_at_sequence == 3


def test_occurred_at_never_goes_backwards():
    service = AuditService()
    actor = Actor(actor_name="Dr. Rivera", actor_role="provider")
    record_id = uuid4()
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    first = service.build_entry(
        tail=None, record_id=record_id, action="signed", actor=actor, details=SignedDetails(signed_at=now), now=now
    )
    # Wall clock stepped back (e.g. NTP correction).
    second = service.build_entry(
        tail=first,
        record_id=record_id,
        action="unlocked",
        actor=actor,
        details=UnlockedDetails(unlocked_at=now, previous_state=ChartState.SIGNED),
        now=now - timedelta(minutes=5),
        reason="Wrong patient selected",
    )

    assert second.sequence == 2
    assert second.occurred_at == first.occurred_at
    assert second.prev_hash == first.entry_hash
    assert service.verify_chain(record_id, [first, second]).valid is True


def test_unknown_details_kind_passes_through():
    payload = {"kind": "fax_sent", "recipient": "Cardiology", "pages": 3}

    details = parse_details(payload)

    assert isinstance(details, OpaqueDetails)
    assert details.kind == "fax_sent"
    assert details.data == {"recipient": "Cardiology", "pages": 3}
    assert details.to_payload() == payload


def test_known_details_keep_extra_keys():
    details = parse_details({"kind": "signed", "signed_at": "2024-03-01T09:00:00Z", "device": "tablet"})

    assert isinstance(details, SignedDetails)
    assert details.signed_at == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert details.to_payload()["device"] == "tablet"


def test_entry_with_opaque_details_round_trips_and_verifies():
    actor = Actor(actor_name="Records Office", actor_role="admin")
    record_id = uuid4()
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    entry = audit_service.build_entry(
        tail=None,
        record_id=record_id,
        action="released_to_patient",
        actor=actor,
        details=OpaqueDetails(kind="release", data={"portal": "mychart"}),
        now=now,
    )

    restored = AuditEntry.model_validate(entry.model_dump(mode="json"))

    assert restored.details == entry.details
    assert audit_service.verify_chain(record_id, [restored]).valid is True


def test_chain_verifies_when_timestamps_come_back_in_another_offset(service, draft, provider):
    service.sign_chart(draft.record_id, provider)
    service.close_chart(draft.record_id, provider)
    eastern = timezone(timedelta(hours=-5))

    # As read from a database session whose TimeZone is not UTC.
    shifted = [
        entry.model_copy(update={"occurred_at": entry.occurred_at.astimezone(eastern)})
        for entry in service.get_audit_trail(draft.record_id)
    ]

    assert shifted[0].occurred_at.utcoffset() == timedelta(hours=-5)
    report = audit_service.verify_chain(draft.record_id, shifted)
    assert report.valid is True
    assert report.entry_count == 3
