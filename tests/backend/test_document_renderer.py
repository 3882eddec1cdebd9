import json
from uuid import uuid4

import httpx
import pytest

from src.backend.config import settings
from src.backend.domain.models.addendum import AddendumKind
from src.backend.services.documents.backends import (
    DemoDocumentRenderer,
    HttpDocumentRenderer,
    RendererError,
    build_snapshot,
)


def _renderer(handler):
    return HttpDocumentRenderer(
        base_url="https://render.example.test/v1/render",
        api_key="secret-key",
        transport=httpx.MockTransport(handler),
    )


def test_http_renderer_posts_snapshot():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"document_url": "https://files.example.test/note.pdf"})

    record_id = uuid4()
    url = _renderer(handler).render(record_id, {"record_id": str(record_id), "addendums": []}, 1000)

    assert url == "https://files.example.test/note.pdf"
    assert seen["headers"]["X-API-Key"] == "secret-key"
    assert seen["body"]["record_id"] == str(record_id)


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"status": "queued"}),
    ],
)
def test_http_renderer_bad_responses(response):
    with pytest.raises(RendererError):
        _renderer(lambda request: response).render(uuid4(), {}, 1000)


def test_http_renderer_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(RendererError, match="timed out"):
        _renderer(handler).render(uuid4(), {}, 250)


def test_http_renderer_connection_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RendererError):
        _renderer(handler).render(uuid4(), {}, 250)


def test_http_renderer_requires_url(monkeypatch):
    monkeypatch.setattr(settings, "renderer_url", None)
    with pytest.raises(RuntimeError):
        HttpDocumentRenderer()


def test_demo_renderer_revisions():
    renderer = DemoDocumentRenderer()
    record_id = uuid4()

    first = renderer.render(record_id, {"addendums": []}, 1000)
    second = renderer.render(record_id, {"addendums": [{"text": "late entry"}]}, 1000)

    assert first == f"demo://clinical-notes/{record_id}/1-clinical-note.pdf"
    assert second == f"demo://clinical-notes/{record_id}/2-clinical-note-amended.pdf"


def test_snapshot_includes_addenda_in_order(service, draft, provider):
    service.sign_chart(draft.record_id, provider)
    service.add_addendum(draft.record_id, provider, AddendumKind.ADDENDUM, "First")
    service.add_addendum(draft.record_id, provider, AddendumKind.LATE_ENTRY, "Second")

    snapshot = build_snapshot(service.get_chart(draft.record_id), service.list_addenda(draft.record_id))

    assert snapshot["state"] == "amended"
    assert snapshot["signed_by"] == "Dr. Rivera"
    assert [a["text"] for a in snapshot["addendums"]] == ["First", "Second"]
    assert [a["addendum_type"] for a in snapshot["addendums"]] == ["addendum", "late_entry"]
