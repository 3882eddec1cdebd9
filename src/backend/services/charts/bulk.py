from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional
from uuid import UUID

from src.backend.config import settings
from src.backend.domain.errors import ChartError
from src.backend.domain.models.actor import Actor
from src.backend.domain.models.results import BulkResult, PerRecordResult, TransitionResult
from src.backend.services.charts.service import ChartLifecycleService, chart_service

logger = logging.getLogger("charts")


class BulkOperationCoordinator:
    """Applies one transition to many charts, each independently.

    Every record goes through the regular single-record path, so it is
    re-validated and committed (or rejected) on its own. A rejected record
    is reported and skipped; nothing already committed is rolled back.
    Records run concurrently on a bounded thread pool, which is safe because
    each transition is guarded by its own compare-and-swap.
    """

    def __init__(self, service: Optional[ChartLifecycleService] = None, max_workers: Optional[int] = None) -> None:
        self._service = service or chart_service
        self._max_workers = max_workers or settings.bulk_max_workers

    def bulk_sign(self, record_ids: Iterable[UUID], actor: Actor) -> BulkResult:
        return self._run("sign", record_ids, lambda record_id: self._service.sign_chart(record_id, actor))

    def bulk_close(self, record_ids: Iterable[UUID], actor: Actor) -> BulkResult:
        return self._run("close", record_ids, lambda record_id: self._service.close_chart(record_id, actor))

    def _run(
        self,
        action: str,
        record_ids: Iterable[UUID],
        operation: Callable[[UUID], TransitionResult],
    ) -> BulkResult:
        # Duplicates would only race against themselves; keep first occurrence.
        unique_ids = list(dict.fromkeys(record_ids))
        if not unique_ids:
            return BulkResult(action=action, success_count=0, failure_count=0, results=[])

        workers = max(1, min(self._max_workers, len(unique_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"bulk-{action}") as pool:
            results: List[PerRecordResult] = list(
                pool.map(lambda record_id: self._apply_one(record_id, operation), unique_ids)
            )

        success_count = sum(1 for r in results if r.success)
        failure_count = len(results) - success_count
        logger.info("Bulk %s over %d charts: %d succeeded, %d failed", action, len(results), success_count, failure_count)
        return BulkResult(action=action, success_count=success_count, failure_count=failure_count, results=results)

    def _apply_one(self, record_id: UUID, operation: Callable[[UUID], TransitionResult]) -> PerRecordResult:
        try:
            outcome = operation(record_id)
        except ChartError as exc:
            return PerRecordResult(
                record_id=record_id,
                success=False,
                error_code=exc.code,
                error_message=exc.message,
            )
        except Exception as exc:
            # One broken record must not abort the rest of the batch.
            logger.exception("Bulk operation failed unexpectedly for chart %s", record_id)
            return PerRecordResult(
                record_id=record_id,
                success=False,
                error_code="internal_error",
                error_message=str(exc),
            )
        return PerRecordResult(
            record_id=record_id,
            success=True,
            state=outcome.record.state,
            warnings=outcome.warnings,
        )


bulk_coordinator = BulkOperationCoordinator()
