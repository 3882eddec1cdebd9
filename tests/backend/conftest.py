from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from uuid import UUID

import pytest

from src.backend.domain.models.actor import Actor
from src.backend.domain.models.chart_record import ChartContent
from src.backend.infra.db.inmemory import InMemoryChartStore
from src.backend.services.charts.service import ChartLifecycleService


class FakeClock:
    """Monotonic test clock; every read advances by one second."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class RecordingRenderer:
    """Renderer stub that remembers what it was asked to render."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def render(self, record_id: UUID, snapshot: Dict[str, Any], timeout_ms: int) -> str:
        self.calls.append(snapshot)
        return f"https://docs.example.test/{record_id}/{len(self.calls)}.pdf"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryChartStore:
    return InMemoryChartStore()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def service(store, renderer, clock) -> ChartLifecycleService:
    return ChartLifecycleService(store=store, renderer=renderer, clock=clock, renderer_timeout_ms=2000)


@pytest.fixture
def provider() -> Actor:
    return Actor(actor_name="Dr. Rivera", actor_role="provider")


@pytest.fixture
def supervisor() -> Actor:
    return Actor(actor_name="Dr. Okafor", actor_role="supervisor")


@pytest.fixture
def soap() -> ChartContent:
    return ChartContent(
        subjective="Cough for 3 days",
        objective="Temp 37.9C, clear lungs",
        assessment="Viral URI",
        plan="Fluids, rest, return if worse",
    )


@pytest.fixture
def draft(service, soap):
    return service.create_chart(subject_id="pat-1", owner_id="Dr. Rivera", content=soap, encounter_complete=True)
