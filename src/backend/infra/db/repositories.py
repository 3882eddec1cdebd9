from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Iterable, List, Optional
from uuid import UUID

from src.backend.domain.models.addendum import AddendumEntry
from src.backend.domain.models.audit_entry import AuditEntry
from src.backend.domain.models.chart_record import ChartRecord, ChartState


class ChartTransaction(ABC):
    """Unit of work scoped to a single chart record.

    Writes are staged and become visible together when the surrounding
    ``with`` block exits normally; an exception discards all of them. While
    the transaction is open no other transaction on the same record can run.
    """

    @abstractmethod
    def compare_and_swap(self, expected_state: ChartState, expected_version: int, record: ChartRecord) -> bool:
        """Replace the record iff its stored state and version still match."""
        raise NotImplementedError

    @abstractmethod
    def audit_tail(self) -> Optional[AuditEntry]:
        """Return the latest audit entry for the record, including staged ones."""
        raise NotImplementedError

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_addendum(self, addendum: AddendumEntry) -> None:
        raise NotImplementedError


class ChartStore(ABC):
    @abstractmethod
    def get(self, record_id: UUID) -> Optional[ChartRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_by_filters(
        self,
        *,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        state: Optional[ChartState] = None,
    ) -> Iterable[ChartRecord]:
        raise NotImplementedError

    @abstractmethod
    def insert(self, record: ChartRecord) -> None:
        """Store a brand-new record; raises KeyError if the id already exists."""
        raise NotImplementedError

    @abstractmethod
    def transaction(self, record_id: UUID) -> AbstractContextManager[ChartTransaction]:
        """Open a transaction on ``record_id``; raises RecordNotFound if unknown."""
        raise NotImplementedError

    @abstractmethod
    def query_audit(self, record_id: UUID) -> List[AuditEntry]:
        """Audit entries for a record ordered by (occurred_at, sequence)."""
        raise NotImplementedError

    @abstractmethod
    def list_addenda(self, record_id: UUID) -> List[AddendumEntry]:
        raise NotImplementedError
