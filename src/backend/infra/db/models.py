from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.backend.domain.models.addendum import AddendumEntry, AddendumKind
from src.backend.domain.models.audit_entry import AuditEntry
from src.backend.domain.models.chart_record import ChartContent, ChartRecord, ChartState


class Base(DeclarativeBase):
    pass


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns;
    # Postgres returns them in the session TimeZone.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ChartRecordORM(Base):
    __tablename__ = "chart_records"

    record_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    subject_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    state: Mapped[str] = mapped_column(String, nullable=False, index=True)
    content: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    encounter_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    document_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    cosign_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cosigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cosigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @staticmethod
    def column_values(record: ChartRecord) -> Dict[str, Any]:
        """Column/value mapping for a domain record, used for inserts and conditional updates."""

        return {
            "record_id": record.record_id,
            "subject_id": record.subject_id,
            "owner_id": record.owner_id,
            "state": record.state.value,
            "content": record.content.model_dump(mode="json"),
            "created_at": record.created_at,
            "last_modified_at": record.last_modified_at,
            "scheduled_time": record.scheduled_time,
            "encounter_complete": record.encounter_complete,
            "signed_at": record.signed_at,
            "signed_by": record.signed_by,
            "closed_at": record.closed_at,
            "closed_by": record.closed_by,
            "document_ref": record.document_ref,
            "cosign_required": record.cosign_required,
            "cosigned_at": record.cosigned_at,
            "cosigned_by": record.cosigned_by,
            "version": record.version,
        }

    @classmethod
    def from_domain(cls, record: ChartRecord) -> "ChartRecordORM":
        return cls(**cls.column_values(record))

    def to_domain(self) -> ChartRecord:
        return ChartRecord(
            record_id=self.record_id,
            subject_id=self.subject_id,
            owner_id=self.owner_id,
            state=ChartState(self.state),
            content=ChartContent.model_validate(self.content or {}),
            created_at=_as_utc(self.created_at),
            last_modified_at=_as_utc(self.last_modified_at),
            scheduled_time=_as_utc(self.scheduled_time),
            encounter_complete=self.encounter_complete,
            signed_at=_as_utc(self.signed_at),
            signed_by=self.signed_by,
            closed_at=_as_utc(self.closed_at),
            closed_by=self.closed_by,
            document_ref=self.document_ref,
            cosign_required=self.cosign_required,
            cosigned_at=_as_utc(self.cosigned_at),
            cosigned_by=self.cosigned_by,
            version=self.version,
        )


class AuditEntryORM(Base):
    __tablename__ = "chart_audit_log"
    __table_args__ = (UniqueConstraint("record_id", "sequence", name="uq_chart_audit_record_sequence"),)

    # Store-assigned, strictly increasing; also breaks occurred_at ties.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    record_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("chart_records.record_id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    actor_name: Mapped[str] = mapped_column(String, nullable=False)
    actor_role: Mapped[str] = mapped_column(String, nullable=False)
    reason_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryORM":
        return cls(
            entry_id=entry.entry_id,
            record_id=entry.record_id,
            sequence=entry.sequence,
            action=entry.action,
            actor_name=entry.actor_name,
            actor_role=entry.actor_role,
            reason_text=entry.reason_text,
            details=entry.details.to_payload(),
            occurred_at=entry.occurred_at,
            prev_hash=entry.prev_hash,
            entry_hash=entry.entry_hash,
        )

    def to_domain(self) -> AuditEntry:
        return AuditEntry(
            entry_id=self.entry_id,
            record_id=self.record_id,
            sequence=self.sequence,
            action=self.action,
            actor_name=self.actor_name,
            actor_role=self.actor_role,
            reason_text=self.reason_text,
            details=self.details,
            occurred_at=_as_utc(self.occurred_at),
            prev_hash=self.prev_hash,
            entry_hash=self.entry_hash,
        )


class AddendumORM(Base):
    __tablename__ = "chart_addendums"

    addendum_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    record_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("chart_records.record_id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    body_text: Mapped[str] = mapped_column(Text, nullable=False)
    reason_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    author_name: Mapped[str] = mapped_column(String, nullable=False)
    author_role: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @classmethod
    def from_domain(cls, addendum: AddendumEntry) -> "AddendumORM":
        return cls(
            addendum_id=addendum.addendum_id,
            record_id=addendum.record_id,
            kind=addendum.kind.value,
            body_text=addendum.body_text,
            reason_text=addendum.reason_text,
            author_name=addendum.author_name,
            author_role=addendum.author_role,
            created_at=addendum.created_at,
        )

    def to_domain(self) -> AddendumEntry:
        return AddendumEntry(
            addendum_id=self.addendum_id,
            record_id=self.record_id,
            kind=AddendumKind(self.kind),
            body_text=self.body_text,
            reason_text=self.reason_text,
            author_name=self.author_name,
            author_role=self.author_role,
            created_at=_as_utc(self.created_at),
        )
