from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import UUID

from src.backend.domain.models.chart_record import ChartState


class ChartError(Exception):
    """Base class for rejected chart operations.

    Every subclass carries a stable ``code`` so API callers and bulk results
    can react without parsing messages.
    """

    code = "chart_error"
    retryable = False

    def __init__(self, message: str, *, record_id: Optional[UUID] = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.record_id = record_id
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }
        if self.record_id is not None:
            body["record_id"] = str(self.record_id)
        for key, value in self.context.items():
            body[key] = value.value if isinstance(value, ChartState) else value
        return body


class RecordNotFound(ChartError):
    code = "not_found"

    def __init__(self, record_id: UUID) -> None:
        super().__init__(f"Chart record {record_id} not found", record_id=record_id)


class InvalidTransition(ChartError):
    code = "invalid_transition"

    def __init__(self, record_id: UUID, action: str, current_state: ChartState, message: Optional[str] = None) -> None:
        super().__init__(
            message or f'Cannot {action} chart. Current status is "{current_state.value}".',
            record_id=record_id,
            action=action,
            current_state=current_state,
        )
        self.action = action
        self.current_state = current_state


class ChartLocked(InvalidTransition):
    code = "chart_locked"

    def __init__(self, record_id: UUID, current_state: ChartState) -> None:
        super().__init__(
            record_id,
            "edit",
            current_state,
            f'Chart is locked in status "{current_state.value}"; use an addendum or unlock it first.',
        )


class ChartValidationError(ChartError):
    code = "validation_error"

    def __init__(self, message: str, *, record_id: Optional[UUID] = None, field: Optional[str] = None) -> None:
        if field is not None:
            super().__init__(message, record_id=record_id, field=field)
        else:
            super().__init__(message, record_id=record_id)
        self.field = field


class ConcurrencyConflict(ChartError):
    code = "concurrency_conflict"
    retryable = True

    def __init__(self, record_id: UUID, action: str) -> None:
        super().__init__(
            f"Chart {record_id} was modified concurrently while attempting to {action}; reload and retry.",
            record_id=record_id,
            action=action,
        )


class RendererUnavailable(ChartError):
    """Document rendering failed.

    Attached as a warning to a committed Close or Addendum; raised only when a
    caller explicitly asks to regenerate the document.
    """

    code = "renderer_unavailable"
    retryable = True


class DocumentNotAvailable(ChartError):
    code = "document_not_available"

    def __init__(self, record_id: UUID, current_state: ChartState) -> None:
        super().__init__(
            "No clinical note document exists for this chart. The chart must be closed first.",
            record_id=record_id,
            current_state=current_state,
        )
