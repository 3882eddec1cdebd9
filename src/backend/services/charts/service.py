from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from typing import Callable, Iterable, List, NamedTuple, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from src.backend.config import settings
from src.backend.domain import lifecycle
from src.backend.domain.errors import (
    ChartValidationError,
    ConcurrencyConflict,
    DocumentNotAvailable,
    InvalidTransition,
    RecordNotFound,
    RendererUnavailable,
)
from src.backend.domain.lifecycle import Transition
from src.backend.domain.models.actor import SYSTEM_ACTOR, Actor
from src.backend.domain.models.addendum import AddendumEntry, AddendumKind
from src.backend.domain.models.audit_entry import (
    ADDENDUM_ACTIONS,
    AddendumDetails,
    AuditAction,
    AuditDetails,
    AuditEntry,
    ClosedDetails,
    CosignedDetails,
    DocumentAccessDetails,
    DocumentGeneratedDetails,
    PreliminaryDetails,
    SignedDetails,
    UnlockedDetails,
)
from src.backend.domain.models.chart_record import ChartContent, ChartRecord, ChartState
from src.backend.domain.models.results import (
    AddendumResult,
    AuditChainReport,
    DocumentAccess,
    TransitionResult,
    TransitionWarning,
)
from src.backend.infra.db import inmemory as inmemory_repos
from src.backend.infra.db.repositories import ChartStore, ChartTransaction
from src.backend.services.audit.service import AuditService, audit_service
from src.backend.services.documents.backends import (
    DocumentRenderer,
    RendererError,
    build_snapshot,
    get_renderer_from_env,
)

logger = logging.getLogger("charts")

# Renders run here so a renderer that ignores its timeout still cannot block
# a transition past timeout_ms.
_render_pool = ThreadPoolExecutor(max_workers=settings.render_max_workers, thread_name_prefix="chart-render")


class _PendingEntry(NamedTuple):
    action: str
    actor: Actor
    details: AuditDetails
    reason: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChartLifecycleService:
    """Executes chart lifecycle transitions.

    Every transition follows the same path: load the record, validate it
    against the state machine in :mod:`src.backend.domain.lifecycle`, then
    compare-and-swap the record and append its audit entries in one store
    transaction. Rendering (on close, addendum or explicit regenerate) runs
    outside that transaction and never rolls back a committed transition.

    The service keeps no per-record state of its own; everything is read
    from the store on each call.
    """

    def __init__(
        self,
        *,
        store: Optional[ChartStore] = None,
        renderer: Optional[DocumentRenderer] = None,
        audit: Optional[AuditService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        renderer_timeout_ms: Optional[int] = None,
        render_on_addendum: Optional[bool] = None,
    ) -> None:
        self._store = store
        self._renderer = renderer
        self._audit = audit or audit_service
        self._clock = clock or _utcnow
        self._renderer_timeout_ms = settings.renderer_timeout_ms if renderer_timeout_ms is None else renderer_timeout_ms
        self._render_on_addendum = settings.render_on_addendum if render_on_addendum is None else render_on_addendum

    @property
    def store(self) -> ChartStore:
        # Resolved at call time so init_sql_repositories can swap the default store.
        return self._store or inmemory_repos.chart_store

    @property
    def renderer(self) -> DocumentRenderer:
        if self._renderer is None:
            self._renderer = get_renderer_from_env()
        return self._renderer

    # Records

    def create_chart(
        self,
        *,
        subject_id: str,
        owner_id: str,
        content: Optional[ChartContent] = None,
        scheduled_time: Optional[datetime] = None,
        encounter_complete: bool = False,
        cosign_required: bool = False,
        record_id: Optional[UUID] = None,
    ) -> ChartRecord:
        """Create a chart in draft on the first content save.

        Creation is not a lifecycle transition and writes no audit entry.
        """

        if scheduled_time is not None and scheduled_time.tzinfo is None:
            raise ChartValidationError("scheduled_time must carry a UTC offset", field="scheduled_time")

        now = self._clock()
        record = ChartRecord(
            record_id=record_id or uuid4(),
            subject_id=subject_id,
            owner_id=owner_id,
            state=ChartState.DRAFT,
            content=content or ChartContent(),
            created_at=now,
            last_modified_at=now if content is not None else None,
            scheduled_time=scheduled_time,
            encounter_complete=encounter_complete,
            cosign_required=cosign_required,
        )
        self.store.insert(record)
        logger.info("Chart %s created for subject %s by owner %s", record.record_id, subject_id, owner_id)
        return record

    def get_chart(self, record_id: UUID) -> ChartRecord:
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def list_charts(
        self,
        *,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        state: Optional[ChartState] = None,
    ) -> List[ChartRecord]:
        return list(self.store.list_by_filters(owner_id=owner_id, subject_id=subject_id, state=state))

    def save_content(
        self,
        record_id: UUID,
        content: ChartContent,
        *,
        encounter_complete: Optional[bool] = None,
    ) -> ChartRecord:
        """Replace the clinical content of an unlocked chart."""

        record = self.get_chart(record_id)
        updated = lifecycle.apply_content(record, content, self._clock())
        if encounter_complete is not None:
            updated = updated.model_copy(update={"encounter_complete": encounter_complete})
        self._commit(Transition.EDIT, record, updated, [])
        return updated

    # Transitions

    def sign_chart(self, record_id: UUID, actor: Actor) -> TransitionResult:
        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        now = self._clock()
        updated = lifecycle.apply_sign(record, actor, now)
        self._commit(
            Transition.SIGN,
            record,
            updated,
            [_PendingEntry(AuditAction.SIGNED.value, actor, SignedDetails(signed_at=now))],
        )
        logger.info("Chart %s signed by %s", record_id, actor.actor_name)
        return TransitionResult(record=updated, action=AuditAction.SIGNED.value)

    def mark_preliminary(self, record_id: UUID, actor: Actor) -> TransitionResult:
        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        now = self._clock()
        updated = lifecycle.apply_mark_preliminary(record)
        self._commit(
            Transition.MARK_PRELIMINARY,
            record,
            updated,
            [_PendingEntry(AuditAction.MARKED_PRELIMINARY.value, actor, PreliminaryDetails(marked_at=now))],
        )
        return TransitionResult(record=updated, action=AuditAction.MARKED_PRELIMINARY.value)

    def close_chart(self, record_id: UUID, actor: Actor) -> TransitionResult:
        """Close a signed chart, rendering its document on the way.

        A failed or timed-out render does not block the close: the chart is
        closed without a document_ref and the result carries a
        ``renderer_unavailable`` warning. Use :meth:`regenerate_document` to
        retry the render later.
        """

        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        lifecycle.ensure_allowed(record, Transition.CLOSE)

        document_url, render_error = self._render(record, self.store.list_addenda(record_id))

        now = self._clock()
        updated = lifecycle.apply_close(record, actor, now, document_url)
        entries = [
            _PendingEntry(
                AuditAction.CLOSED.value,
                actor,
                ClosedDetails(closed_at=now, document_url=document_url, renderer_error=render_error),
            )
        ]
        if document_url is not None:
            entries.append(
                _PendingEntry(
                    AuditAction.PDF_GENERATED.value,
                    SYSTEM_ACTOR,
                    DocumentGeneratedDetails(document_url=document_url, trigger=AuditAction.CLOSED.value),
                )
            )
        self._commit(Transition.CLOSE, record, updated, entries)

        warnings: List[TransitionWarning] = []
        if render_error is not None:
            warnings.append(TransitionWarning(code=RendererUnavailable.code, detail=render_error))
        logger.info("Chart %s closed by %s (document=%s)", record_id, actor.actor_name, document_url is not None)
        return TransitionResult(record=updated, action=AuditAction.CLOSED.value, warnings=warnings)

    def add_addendum(
        self,
        record_id: UUID,
        actor: Actor,
        kind: AddendumKind,
        body: Optional[str],
        reason: Optional[str] = None,
    ) -> AddendumResult:
        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        body_text, reason_text = lifecycle.validate_addendum(
            record,
            kind,
            body,
            reason,
            body_min_length=settings.addendum_min_length,
            reason_min_length=settings.reason_min_length,
        )
        now = self._clock()
        addendum = AddendumEntry(
            addendum_id=uuid4(),
            record_id=record_id,
            kind=kind,
            body_text=body_text,
            reason_text=reason_text,
            author_name=actor.actor_name,
            author_role=actor.actor_role,
            created_at=now,
        )
        updated = lifecycle.apply_addendum(record)
        action = ADDENDUM_ACTIONS[kind].value
        self._commit(
            Transition.ADDENDUM,
            record,
            updated,
            [
                _PendingEntry(
                    action,
                    actor,
                    AddendumDetails(addendum_id=addendum.addendum_id, addendum_kind=kind, text_length=len(body_text)),
                    reason_text,
                )
            ],
            addendum=addendum,
        )
        logger.info("Chart %s: %s by %s", record_id, action, actor.actor_name)

        warnings: List[TransitionWarning] = []
        # Only charts that already went through close carry a document to refresh.
        if self._render_on_addendum and (record.document_ref is not None or record.state is ChartState.CLOSED):
            updated, warning = self._refresh_document(updated, trigger=action)
            if warning is not None:
                warnings.append(warning)
        return AddendumResult(record=updated, action=action, addendum=addendum, warnings=warnings)

    def cosign(self, record_id: UUID, actor: Actor) -> TransitionResult:
        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        now = self._clock()
        updated = lifecycle.apply_cosign(record, actor, now)
        self._commit(
            Transition.COSIGN,
            record,
            updated,
            [_PendingEntry(AuditAction.COSIGNED.value, actor, CosignedDetails(cosigned_at=now))],
        )
        logger.info("Chart %s cosigned by %s", record_id, actor.actor_name)
        return TransitionResult(record=updated, action=AuditAction.COSIGNED.value)

    def unlock_chart(self, record_id: UUID, actor: Actor, reason: Optional[str]) -> TransitionResult:
        """Reopen a locked chart for editing.

        The reason is mandatory and recorded on the audit entry; it is the only
        justification trail for reopening a signed document.
        """

        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        now = self._clock()
        updated, reason_text = lifecycle.apply_unlock(record, reason, reason_min_length=settings.reason_min_length)
        self._commit(
            Transition.UNLOCK,
            record,
            updated,
            [
                _PendingEntry(
                    AuditAction.UNLOCKED.value,
                    actor,
                    UnlockedDetails(unlocked_at=now, previous_state=record.state),
                    reason_text,
                )
            ],
        )
        logger.info("Chart %s unlocked by %s (was %s)", record_id, actor.actor_name, record.state.value)
        return TransitionResult(record=updated, action=AuditAction.UNLOCKED.value)

    # Documents

    def regenerate_document(self, record_id: UUID, actor: Actor) -> TransitionResult:
        """Render the current snapshot again, e.g. after a close whose render failed."""

        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        lifecycle.ensure_allowed(record, Transition.REGENERATE_DOCUMENT)
        addenda = self.store.list_addenda(record_id)
        document_url, render_error = self._render(record, addenda)
        if document_url is None:
            raise RendererUnavailable(render_error or "Renderer unavailable", record_id=record_id)

        updated = lifecycle.apply_document(record, document_url)
        self._commit(
            Transition.REGENERATE_DOCUMENT,
            record,
            updated,
            [
                _PendingEntry(
                    AuditAction.PDF_GENERATED.value,
                    actor,
                    DocumentGeneratedDetails(
                        document_url=document_url,
                        trigger="regenerated",
                        addendum_count=len(addenda),
                    ),
                )
            ],
        )
        return TransitionResult(record=updated, action=AuditAction.PDF_GENERATED.value)

    def get_document(self, record_id: UUID, actor: Actor, *, download: bool = False) -> DocumentAccess:
        """Return the chart's document URL and record the access in the audit trail."""

        record = self.get_chart(record_id)
        lifecycle.require_actor(actor, record)
        if not record.document_ref:
            raise DocumentNotAvailable(record_id, record.state)

        action = AuditAction.PDF_DOWNLOADED if download else AuditAction.PDF_VIEWED
        self._append_only(
            record_id,
            [
                _PendingEntry(
                    action.value,
                    actor,
                    DocumentAccessDetails(access="download" if download else "view", document_url=record.document_ref),
                )
            ],
        )
        return DocumentAccess(record_id=record_id, document_url=record.document_ref, state=record.state)

    # Audit / addenda reads

    def get_audit_trail(self, record_id: UUID) -> List[AuditEntry]:
        self.get_chart(record_id)
        return self.store.query_audit(record_id)

    def verify_audit_trail(self, record_id: UUID) -> AuditChainReport:
        return self._audit.verify_chain(record_id, self.get_audit_trail(record_id))

    def list_addenda(self, record_id: UUID) -> List[AddendumEntry]:
        self.get_chart(record_id)
        return self.store.list_addenda(record_id)

    # Internals

    def _render(self, record: ChartRecord, addenda: Sequence[AddendumEntry]) -> Tuple[Optional[str], Optional[str]]:
        """Render a snapshot, returning (document_url, None) or (None, error message)."""

        snapshot = build_snapshot(record, list(addenda))
        timeout_ms = self._renderer_timeout_ms
        future = _render_pool.submit(self.renderer.render, record.record_id, snapshot, timeout_ms)
        try:
            return future.result(timeout=timeout_ms / 1000.0), None
        except FuturesTimeout:
            future.cancel()
            logger.warning("Rendering chart %s exceeded %sms", record.record_id, timeout_ms)
            return None, f"Renderer timed out after {timeout_ms}ms"
        except RendererError as exc:
            logger.warning("Rendering chart %s failed: %s", record.record_id, exc)
            return None, str(exc)
        except Exception as exc:
            logger.exception("Unexpected renderer failure for chart %s", record.record_id)
            return None, f"Renderer failed: {exc}"

    def _refresh_document(self, record: ChartRecord, *, trigger: str) -> Tuple[ChartRecord, Optional[TransitionWarning]]:
        addenda = self.store.list_addenda(record.record_id)
        document_url, render_error = self._render(record, addenda)
        if document_url is None:
            return record, TransitionWarning(code=RendererUnavailable.code, detail=render_error or "Renderer unavailable")

        updated = lifecycle.apply_document(record, document_url)
        try:
            self._commit(
                Transition.REGENERATE_DOCUMENT,
                record,
                updated,
                [
                    _PendingEntry(
                        AuditAction.PDF_GENERATED.value,
                        SYSTEM_ACTOR,
                        DocumentGeneratedDetails(document_url=document_url, trigger=trigger, addendum_count=len(addenda)),
                    )
                ],
            )
        except (ConcurrencyConflict, InvalidTransition) as exc:
            # Someone else moved the chart on; their write wins and the document
            # can be regenerated explicitly.
            logger.info("Skipping document refresh for chart %s: %s", record.record_id, exc.message)
            return record, TransitionWarning(code=exc.code, detail=exc.message)
        return updated, None

    def _commit(
        self,
        transition: Transition,
        before: ChartRecord,
        after: ChartRecord,
        pending: Iterable[_PendingEntry],
        *,
        addendum: Optional[AddendumEntry] = None,
    ) -> List[AuditEntry]:
        """Swap ``before`` for ``after`` and append audit entries atomically.

        If the swap loses a race, the fresh record is re-validated so the
        caller gets InvalidTransition when the action is no longer legal and
        ConcurrencyConflict otherwise.
        """

        committed: List[AuditEntry] = []
        swapped = False
        with self.store.transaction(before.record_id) as tx:
            if tx.compare_and_swap(before.state, before.version, after):
                swapped = True
                committed = self._stage_entries(tx, before.record_id, pending)
                if addendum is not None:
                    tx.add_addendum(addendum)

        if not swapped:
            self._raise_conflict(transition, before)

        for entry in committed:
            self._audit.mirror(entry)
        return committed

    def _append_only(self, record_id: UUID, pending: Iterable[_PendingEntry]) -> List[AuditEntry]:
        with self.store.transaction(record_id) as tx:
            committed = self._stage_entries(tx, record_id, pending)
        for entry in committed:
            self._audit.mirror(entry)
        return committed

    def _stage_entries(self, tx: ChartTransaction, record_id: UUID, pending: Iterable[_PendingEntry]) -> List[AuditEntry]:
        staged: List[AuditEntry] = []
        tail = tx.audit_tail()
        for item in pending:
            entry = self._audit.build_entry(
                tail=tail,
                record_id=record_id,
                action=item.action,
                actor=item.actor,
                details=item.details,
                reason=item.reason,
                now=self._clock(),
            )
            tx.append_audit(entry)
            staged.append(entry)
            tail = entry
        return staged

    def _raise_conflict(self, transition: Transition, before: ChartRecord) -> None:
        fresh = self.get_chart(before.record_id)
        logger.info(
            "Lost compare-and-swap on chart %s (%s): %s v%s -> %s v%s",
            before.record_id,
            transition.value,
            before.state.value,
            before.version,
            fresh.state.value,
            fresh.version,
        )
        lifecycle.ensure_allowed(fresh, transition)
        raise ConcurrencyConflict(before.record_id, transition.value)


chart_service = ChartLifecycleService()
