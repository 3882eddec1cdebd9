"""Chart lifecycle state machine.

Everything here is pure: functions take a :class:`ChartRecord` and return a
new one (or raise), never touching storage. The lifecycle service composes
these with the store's compare-and-swap and the audit trail.

States and edges::

    draft ──► preliminary ──► signed ──► closed
      │                        ▲  │        │
      └────────────────────────┘  ▼        ▼
                              amended ◄────┘
    unlock: signed | closed | amended ──► draft

Cosign is orthogonal to the state and only depends on the cosign flags.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from src.backend.domain.errors import ChartLocked, ChartValidationError, InvalidTransition
from src.backend.domain.models.actor import Actor
from src.backend.domain.models.addendum import AddendumKind
from src.backend.domain.models.chart_record import LOCKED_STATES, ChartContent, ChartRecord, ChartState


class Transition(str, Enum):
    EDIT = "edit"
    SIGN = "sign"
    CLOSE = "close"
    ADDENDUM = "addendum"
    COSIGN = "cosign"
    UNLOCK = "unlock"
    MARK_PRELIMINARY = "mark_preliminary"
    REGENERATE_DOCUMENT = "regenerate_document"


ALLOWED_FROM: Dict[Transition, FrozenSet[ChartState]] = {
    Transition.SIGN: frozenset({ChartState.DRAFT, ChartState.PRELIMINARY}),
    Transition.CLOSE: frozenset({ChartState.SIGNED}),
    Transition.ADDENDUM: LOCKED_STATES,
    Transition.UNLOCK: LOCKED_STATES,
    Transition.MARK_PRELIMINARY: frozenset({ChartState.DRAFT}),
    Transition.REGENERATE_DOCUMENT: frozenset({ChartState.CLOSED, ChartState.AMENDED}),
}


def ensure_allowed(record: ChartRecord, transition: Transition) -> None:
    """Raise InvalidTransition if ``transition`` is illegal from the record's state."""

    if transition is Transition.COSIGN:
        ensure_cosign_allowed(record)
        return
    if transition is Transition.EDIT:
        ensure_editable(record)
        return
    allowed = ALLOWED_FROM[transition]
    if record.state not in allowed:
        expected = ", ".join(sorted(state.value for state in allowed))
        raise InvalidTransition(
            record.record_id,
            transition.value,
            record.state,
            f'Cannot {transition.value.replace("_", " ")} chart. Current status is '
            f'"{record.state.value}"; allowed from: {expected}.',
        )


def ensure_cosign_allowed(record: ChartRecord) -> None:
    if not record.cosign_required or record.cosigned_at is not None:
        raise InvalidTransition(
            record.record_id,
            Transition.COSIGN.value,
            record.state,
            "Chart does not require a cosignature or has already been cosigned.",
        )


def ensure_editable(record: ChartRecord) -> None:
    if record.locked:
        raise ChartLocked(record.record_id, record.state)


def require_text(value: Optional[str], *, min_length: int, field: str, message: str, record: ChartRecord) -> str:
    """Return ``value`` stripped, or raise if it is shorter than ``min_length``."""

    text = (value or "").strip()
    if len(text) < min_length:
        raise ChartValidationError(message, record_id=record.record_id, field=field)
    return text


def require_actor(actor: Actor, record: ChartRecord) -> None:
    if not actor.actor_name.strip():
        raise ChartValidationError("Actor name is required", record_id=record.record_id, field="actor_name")
    if not actor.actor_role.strip():
        raise ChartValidationError("Actor role is required", record_id=record.record_id, field="actor_role")


def require_content(record: ChartRecord, action: str) -> None:
    if record.content.is_empty():
        raise ChartValidationError(
            f"Cannot {action} a chart without clinical content",
            record_id=record.record_id,
            field="content",
        )


def _advance(record: ChartRecord, **changes) -> ChartRecord:
    changes["version"] = record.version + 1
    return record.model_copy(update=changes, deep=True)


def apply_content(record: ChartRecord, content: ChartContent, now: datetime) -> ChartRecord:
    ensure_editable(record)
    return _advance(record, content=content, last_modified_at=now)


def apply_sign(record: ChartRecord, actor: Actor, now: datetime) -> ChartRecord:
    ensure_allowed(record, Transition.SIGN)
    require_content(record, "sign")
    return _advance(record, state=ChartState.SIGNED, signed_at=now, signed_by=actor.actor_name)


def apply_mark_preliminary(record: ChartRecord) -> ChartRecord:
    ensure_allowed(record, Transition.MARK_PRELIMINARY)
    require_content(record, "mark preliminary")
    return _advance(record, state=ChartState.PRELIMINARY)


def apply_close(record: ChartRecord, actor: Actor, now: datetime, document_url: Optional[str]) -> ChartRecord:
    ensure_allowed(record, Transition.CLOSE)
    return _advance(
        record,
        state=ChartState.CLOSED,
        closed_at=now,
        closed_by=actor.actor_name,
        document_ref=document_url,
    )


def validate_addendum(
    record: ChartRecord,
    kind: AddendumKind,
    body: Optional[str],
    reason: Optional[str],
    *,
    body_min_length: int,
    reason_min_length: int,
) -> tuple[str, Optional[str]]:
    """Check addendum guards and return the normalised (body, reason)."""

    ensure_allowed(record, Transition.ADDENDUM)
    body_text = require_text(
        body,
        min_length=body_min_length,
        field="body",
        message=f"Addendum text is required (minimum {body_min_length} characters)",
        record=record,
    )
    reason_text = (reason or "").strip() or None
    if kind is AddendumKind.CORRECTION:
        reason_text = require_text(
            reason,
            min_length=reason_min_length,
            field="reason",
            message=f"A reason is required for corrections (minimum {reason_min_length} characters)",
            record=record,
        )
    return body_text, reason_text


def apply_addendum(record: ChartRecord) -> ChartRecord:
    ensure_allowed(record, Transition.ADDENDUM)
    return _advance(record, state=ChartState.AMENDED)


def apply_cosign(record: ChartRecord, actor: Actor, now: datetime) -> ChartRecord:
    ensure_cosign_allowed(record)
    return _advance(
        record,
        cosigned_at=now,
        cosigned_by=actor.actor_name,
        cosign_required=False,
    )


def apply_unlock(record: ChartRecord, reason: Optional[str], *, reason_min_length: int) -> tuple[ChartRecord, str]:
    ensure_allowed(record, Transition.UNLOCK)
    reason_text = require_text(
        reason,
        min_length=reason_min_length,
        field="reason",
        message=f"A reason is required to unlock a chart (minimum {reason_min_length} characters)",
        record=record,
    )
    # signed_*/closed_* stay as historical markers.
    return _advance(record, state=ChartState.DRAFT), reason_text


def apply_document(record: ChartRecord, document_url: str) -> ChartRecord:
    return _advance(record, document_ref=document_url)
