from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterable, Iterator, List, Optional
from uuid import UUID

from src.backend.domain.errors import RecordNotFound
from src.backend.domain.models.addendum import AddendumEntry
from src.backend.domain.models.audit_entry import AuditEntry
from src.backend.domain.models.chart_record import ChartRecord, ChartState
from src.backend.infra.db.repositories import ChartStore, ChartTransaction


class _InMemoryChartTransaction(ChartTransaction):
    def __init__(self, store: "InMemoryChartStore", record_id: UUID) -> None:
        self._store = store
        self._record_id = record_id
        self._record: Optional[ChartRecord] = None
        self._audit: List[AuditEntry] = []
        self._addenda: List[AddendumEntry] = []

    def compare_and_swap(self, expected_state: ChartState, expected_version: int, record: ChartRecord) -> bool:
        if record.record_id != self._record_id:
            raise ValueError("Transaction is scoped to a different record")
        current = self._record
        if current is None:
            with self._store._lock:
                current = self._store._records[self._record_id]
        if current.state != expected_state or current.version != expected_version:
            return False
        self._record = record.model_copy(deep=True)
        return True

    def audit_tail(self) -> Optional[AuditEntry]:
        if self._audit:
            return self._audit[-1]
        with self._store._lock:
            entries = self._store._audit.get(self._record_id)
            return entries[-1] if entries else None

    def append_audit(self, entry: AuditEntry) -> None:
        if entry.record_id != self._record_id:
            raise ValueError("Audit entry belongs to a different record")
        self._audit.append(entry)

    def add_addendum(self, addendum: AddendumEntry) -> None:
        if addendum.record_id != self._record_id:
            raise ValueError("Addendum belongs to a different record")
        self._addenda.append(addendum)

    def commit(self) -> None:
        with self._store._lock:
            if self._record is not None:
                self._store._records[self._record_id] = self._record
            self._store._audit[self._record_id].extend(self._audit)
            self._store._addenda[self._record_id].extend(self._addenda)


class InMemoryChartStore(ChartStore):
    """Thread-safe in-memory chart store.

    Intended for tests and local development. Transactions on one record are
    serialized by a per-record lock; different records never wait on each
    other beyond the short critical sections guarding the dictionaries.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[UUID, ChartRecord] = {}
        self._record_locks: Dict[UUID, Lock] = {}
        self._audit: Dict[UUID, List[AuditEntry]] = defaultdict(list)
        self._addenda: Dict[UUID, List[AddendumEntry]] = defaultdict(list)

    def get(self, record_id: UUID) -> Optional[ChartRecord]:
        with self._lock:
            record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    def list_by_filters(
        self,
        *,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        state: Optional[ChartState] = None,
    ) -> Iterable[ChartRecord]:
        with self._lock:
            records = list(self._records.values())
        for record in records:
            if owner_id is not None and record.owner_id != owner_id:
                continue
            if subject_id is not None and record.subject_id != subject_id:
                continue
            if state is not None and record.state != state:
                continue
            yield record.model_copy(deep=True)

    def insert(self, record: ChartRecord) -> None:
        with self._lock:
            if record.record_id in self._records:
                raise KeyError(f"Chart record {record.record_id} already exists")
            self._records[record.record_id] = record.model_copy(deep=True)
            self._record_locks[record.record_id] = Lock()

    @contextmanager
    def transaction(self, record_id: UUID) -> Iterator[ChartTransaction]:
        with self._lock:
            record_lock = self._record_locks.get(record_id)
        if record_lock is None:
            raise RecordNotFound(record_id)
        with record_lock:
            tx = _InMemoryChartTransaction(self, record_id)
            yield tx
            tx.commit()

    def query_audit(self, record_id: UUID) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._audit.get(record_id, []))
        return sorted(entries, key=lambda e: (e.occurred_at, e.sequence))

    def list_addenda(self, record_id: UUID) -> List[AddendumEntry]:
        with self._lock:
            addenda = list(self._addenda.get(record_id, []))
        return sorted(addenda, key=lambda a: a.created_at)


chart_store: ChartStore = InMemoryChartStore()
