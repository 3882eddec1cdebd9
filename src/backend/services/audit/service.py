from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
from uuid import UUID, uuid4

from src.backend.domain.models.actor import Actor
from src.backend.domain.models.audit_entry import AuditDetails, AuditEntry
from src.backend.domain.models.results import AuditChainReport

logger = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured log line mirrored for every committed audit entry.

    Intentionally keeps payload minimal and avoids PHI: ids, action and actor
    only, never chart text or addendum bodies.
    """

    timestamp: str
    action: str
    record_id: str
    entry_id: str
    sequence: int
    actor_name: str
    actor_role: str
    details_kind: str
    has_reason: bool
    entry_hash: str


def compute_entry_hash(
    *,
    record_id: UUID,
    sequence: int,
    action: str,
    actor_name: str,
    actor_role: str,
    reason_text: Optional[str],
    details: Dict[str, Any],
    occurred_at: datetime,
    prev_hash: Optional[str],
) -> str:
    """SHA-256 over a canonical JSON encoding of the entry and its predecessor's hash."""

    canonical = json.dumps(
        {
            "record_id": str(record_id),
            "sequence": sequence,
            "action": action,
            "actor_name": actor_name,
            "actor_role": actor_role,
            "reason_text": reason_text,
            "details": details,
            "occurred_at": occurred_at.astimezone(timezone.utc).isoformat(),
            "prev_hash": prev_hash,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditService:
    def build_entry(
        self,
        *,
        tail: Optional[AuditEntry],
        record_id: UUID,
        action: str,
        actor: Actor,
        details: AuditDetails,
        now: datetime,
        reason: Optional[str] = None,
    ) -> AuditEntry:
        """Create the next entry in a record's chain.

        - `tail`: latest existing entry for the record (from the open
          transaction), or None for the first entry.
        - `now`: wall-clock time; clamped so occurred_at never goes backwards
          relative to `tail`.
        """

        sequence = tail.sequence + 1 if tail is not None else 1
        prev_hash = tail.entry_hash if tail is not None else None
        occurred_at = max(now, tail.occurred_at) if tail is not None else now
        payload = details.to_payload()

        entry_hash = compute_entry_hash(
            record_id=record_id,
            sequence=sequence,
            action=action,
            actor_name=actor.actor_name,
            actor_role=actor.actor_role,
            reason_text=reason,
            details=payload,
            occurred_at=occurred_at,
            prev_hash=prev_hash,
        )
        return AuditEntry(
            entry_id=uuid4(),
            record_id=record_id,
            sequence=sequence,
            action=action,
            actor_name=actor.actor_name,
            actor_role=actor.actor_role,
            reason_text=reason,
            details=details,
            occurred_at=occurred_at,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
        )

    def mirror(self, entry: AuditEntry) -> None:
        """Log a committed entry to the structured audit logger."""

        event = AuditEvent(
            timestamp=entry.occurred_at.isoformat(),
            action=entry.action,
            record_id=str(entry.record_id),
            entry_id=str(entry.entry_id),
            sequence=entry.sequence,
            actor_name=entry.actor_name,
            actor_role=entry.actor_role,
            details_kind=entry.details.kind,
            has_reason=entry.reason_text is not None,
            entry_hash=entry.entry_hash,
        )
        logger.info(json.dumps(asdict(event)))

    def verify_chain(self, record_id: UUID, entries: Iterable[AuditEntry]) -> AuditChainReport:
        """Recompute the hash chain and report the first entry that does not match."""

        ordered = sorted(entries, key=lambda e: e.sequence)
        prev_hash: Optional[str] = None
        for expected_sequence, entry in enumerate(ordered, start=1):
            recomputed = compute_entry_hash(
                record_id=entry.record_id,
                sequence=entry.sequence,
                action=entry.action,
                actor_name=entry.actor_name,
                actor_role=entry.actor_role,
                reason_text=entry.reason_text,
                details=entry.details.to_payload(),
                occurred_at=entry.occurred_at,
                prev_hash=entry.prev_hash,
            )
            if (
                entry.record_id != record_id
                or entry.sequence != expected_sequence
                or entry.prev_hash != prev_hash
                or entry.entry_hash != recomputed
            ):
                logger.warning(
                    "Audit chain for chart %s broken at sequence %s", record_id, entry.sequence
                )
                return AuditChainReport(
                    record_id=record_id,
                    valid=False,
                    entry_count=len(ordered),
                    broken_at_sequence=entry.sequence,
                )
            prev_hash = entry.entry_hash

        return AuditChainReport(record_id=record_id, valid=True, entry_count=len(ordered))


audit_service = AuditService()
