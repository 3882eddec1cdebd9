from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

import httpx

from src.backend.config import settings
from src.backend.domain.models.addendum import AddendumEntry
from src.backend.domain.models.chart_record import ChartRecord

logger = logging.getLogger("renderer")


class RendererError(Exception):
    """Rendering failed or timed out; callers treat this as retryable."""


class DocumentRenderer(Protocol):
    """Protocol for document renderers.

    Implementations turn a chart snapshot into a retrievable document and
    return its URL, raising :class:`RendererError` on any failure.
    """

    def render(self, record_id: UUID, snapshot: Dict[str, Any], timeout_ms: int) -> str:  # pragma: no cover - interface
        raise NotImplementedError


def build_snapshot(record: ChartRecord, addenda: List[AddendumEntry]) -> Dict[str, Any]:
    """JSON-ready snapshot of the signed content plus addenda, in creation order."""

    return {
        "record_id": str(record.record_id),
        "subject_id": record.subject_id,
        "owner_id": record.owner_id,
        "state": record.state.value,
        "scheduled_time": record.scheduled_time.isoformat() if record.scheduled_time else None,
        "signed_at": record.signed_at.isoformat() if record.signed_at else None,
        "signed_by": record.signed_by,
        "closed_at": record.closed_at.isoformat() if record.closed_at else None,
        "closed_by": record.closed_by,
        "cosigned_by": record.cosigned_by,
        "content": record.content.model_dump(mode="json"),
        "addendums": [
            {
                "addendum_id": str(a.addendum_id),
                "addendum_type": a.kind.value,
                "text": a.body_text,
                "reason": a.reason_text,
                "created_by_name": a.author_name,
                "created_by_role": a.author_role,
                "created_at": a.created_at.isoformat(),
            }
            for a in addenda
        ],
    }


class DemoDocumentRenderer:
    """Deterministic offline renderer.

    Returns a stable pseudo-URL per render so tests and local runs need no
    render service. Each call for the same record gets a new revision number.
    """

    def __init__(self) -> None:
        self._revisions: Dict[UUID, int] = {}
        self._lock = Lock()

    def render(self, record_id: UUID, snapshot: Dict[str, Any], timeout_ms: int) -> str:
        with self._lock:
            revision = self._revisions.get(record_id, 0) + 1
            self._revisions[record_id] = revision
        suffix = "-amended" if snapshot.get("addendums") else ""
        return f"demo://clinical-notes/{record_id}/{revision}-clinical-note{suffix}.pdf"


class HttpDocumentRenderer:
    """Renderer that delegates to an HTTP render service.

    The snapshot is POSTed as JSON to ``RENDERER_URL``; the service must answer
    2xx with ``{"document_url": "..."}``. Timeouts, transport errors, non-2xx
    responses and malformed bodies all surface as :class:`RendererError`.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        url = base_url or settings.renderer_url
        if not url:
            raise RuntimeError("RENDERER_URL must be set to use HttpDocumentRenderer")
        self._url = url
        key = api_key or settings.renderer_api_key
        headers = {"X-API-Key": key} if key else {}
        self._client = httpx.Client(headers=headers, transport=transport)

    def render(self, record_id: UUID, snapshot: Dict[str, Any], timeout_ms: int) -> str:
        try:
            response = self._client.post(self._url, json=snapshot, timeout=timeout_ms / 1000.0)
        except httpx.TimeoutException as exc:
            logger.warning("Render of chart %s timed out after %sms", record_id, timeout_ms)
            raise RendererError(f"Renderer timed out after {timeout_ms}ms") from exc
        except httpx.HTTPError as exc:
            logger.warning("Render of chart %s failed: %s", record_id, exc, exc_info=True)
            raise RendererError(f"Renderer request failed: {exc}") from exc

        if not response.is_success:
            logger.error(
                "Renderer returned status %s for chart %s: %s",
                response.status_code,
                record_id,
                response.text[:200],
            )
            raise RendererError(f"Renderer returned status {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise RendererError("Renderer returned a non-JSON response") from exc

        document_url = data.get("document_url") if isinstance(data, dict) else None
        if not document_url:
            raise RendererError("Renderer response did not include a document_url")
        return str(document_url)


demo_document_renderer = DemoDocumentRenderer()


def get_renderer_from_env() -> DocumentRenderer:
    """Select a renderer based on the RENDERER_BACKEND environment variable.

    - RENDERER_BACKEND=http → HttpDocumentRenderer
    - Anything else (or unset) → DemoDocumentRenderer
    """

    backend_name = settings.renderer_backend.lower()
    if backend_name == "http":
        return HttpDocumentRenderer()
    return demo_document_renderer
