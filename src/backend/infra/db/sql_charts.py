from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.backend.domain.errors import RecordNotFound
from src.backend.domain.models.addendum import AddendumEntry
from src.backend.domain.models.audit_entry import AuditEntry
from src.backend.domain.models.chart_record import ChartRecord, ChartState
from src.backend.infra.db.models import AddendumORM, AuditEntryORM, ChartRecordORM
from src.backend.infra.db.repositories import ChartStore, ChartTransaction
from src.backend.infra.db.session import SessionFactory


class _SqlChartTransaction(ChartTransaction):
    def __init__(self, session: Session, record_id: UUID) -> None:
        self._session = session
        self._record_id = record_id
        self._staged_audit: List[AuditEntry] = []

    def compare_and_swap(self, expected_state: ChartState, expected_version: int, record: ChartRecord) -> bool:
        """Conditional UPDATE keyed on (record_id, state, version)."""

        values = ChartRecordORM.column_values(record)
        values.pop("record_id")
        stmt = (
            update(ChartRecordORM)
            .where(
                ChartRecordORM.record_id == self._record_id,
                ChartRecordORM.state == expected_state.value,
                ChartRecordORM.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1

    def audit_tail(self) -> Optional[AuditEntry]:
        if self._staged_audit:
            return self._staged_audit[-1]
        orm = (
            self._session.query(AuditEntryORM)
            .filter(AuditEntryORM.record_id == self._record_id)
            .order_by(AuditEntryORM.sequence.desc())
            .first()
        )
        return orm.to_domain() if orm is not None else None

    def append_audit(self, entry: AuditEntry) -> None:
        if entry.record_id != self._record_id:
            raise ValueError("Audit entry belongs to a different record")
        self._session.add(AuditEntryORM.from_domain(entry))
        self._staged_audit.append(entry)

    def add_addendum(self, addendum: AddendumEntry) -> None:
        if addendum.record_id != self._record_id:
            raise ValueError("Addendum belongs to a different record")
        self._session.add(AddendumORM.from_domain(addendum))


class SqlChartStore(ChartStore):
    """SQL-backed chart store.

    Each transaction runs in one database transaction: the record row is
    locked with ``SELECT ... FOR UPDATE`` up front, so the record update,
    audit entries and addenda commit together or not at all.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def get(self, record_id: UUID) -> Optional[ChartRecord]:
        session = self._session_factory()
        try:
            orm = session.get(ChartRecordORM, record_id)
            return orm.to_domain() if orm is not None else None
        finally:
            session.close()

    def list_by_filters(
        self,
        *,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        state: Optional[ChartState] = None,
    ) -> Iterable[ChartRecord]:
        session = self._session_factory()
        try:
            query = session.query(ChartRecordORM)
            if owner_id is not None:
                query = query.filter(ChartRecordORM.owner_id == owner_id)
            if subject_id is not None:
                query = query.filter(ChartRecordORM.subject_id == subject_id)
            if state is not None:
                query = query.filter(ChartRecordORM.state == state.value)

            for orm in query.order_by(ChartRecordORM.created_at).all():
                yield orm.to_domain()
        finally:
            session.close()

    def insert(self, record: ChartRecord) -> None:
        session = self._session_factory()
        try:
            session.add(ChartRecordORM.from_domain(record))
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise KeyError(f"Chart record {record.record_id} already exists") from exc
        finally:
            session.close()

    @contextmanager
    def transaction(self, record_id: UUID) -> Iterator[ChartTransaction]:
        session = self._session_factory()
        try:
            orm = session.get(ChartRecordORM, record_id, with_for_update=True)
            if orm is None:
                raise RecordNotFound(record_id)
            yield _SqlChartTransaction(session, record_id)
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def query_audit(self, record_id: UUID) -> List[AuditEntry]:
        session = self._session_factory()
        try:
            rows = (
                session.query(AuditEntryORM)
                .filter(AuditEntryORM.record_id == record_id)
                .order_by(AuditEntryORM.occurred_at, AuditEntryORM.sequence)
                .all()
            )
            return [row.to_domain() for row in rows]
        finally:
            session.close()

    def list_addenda(self, record_id: UUID) -> List[AddendumEntry]:
        session = self._session_factory()
        try:
            rows = (
                session.query(AddendumORM)
                .filter(AddendumORM.record_id == record_id)
                .order_by(AddendumORM.created_at)
                .all()
            )
            return [row.to_domain() for row in rows]
        finally:
            session.close()
