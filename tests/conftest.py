from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from cuemix import EngineConfig
from cuemix.events import EventHub, GraphEvent
from cuemix.graph.manager import GraphManager
from cuemix.orchestrator import Orchestrator
from cuemix.runtime.adapter import DryRunPipelineAdapter

EPOCH = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.value = 0.0

    def now(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += float(seconds)


class FakeWallClock:
    def __init__(self, start: datetime = EPOCH) -> None:
        self.value = start

    def now(self) -> datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += timedelta(seconds=seconds)


class EventRecorder:
    def __init__(self, hub: EventHub) -> None:
        self.events: List[GraphEvent] = []
        hub.subscribe(self.events.append)

    def kinds(self) -> List[str]:
        return [event.kind.value for event in self.events]

    def of_kind(self, kind: str) -> List[GraphEvent]:
        return [event for event in self.events if event.kind.value == kind]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def adapter() -> DryRunPipelineAdapter:
    return DryRunPipelineAdapter()


@pytest.fixture
def manual_adapter() -> DryRunPipelineAdapter:
    return DryRunPipelineAdapter(auto_ack=False)


@pytest.fixture
def graph(adapter, clock, wall_clock) -> GraphManager:
    return GraphManager(adapter, grace_period=5.0, clock=clock.now, wall_clock=wall_clock.now)


@pytest.fixture
def manual_graph(manual_adapter, clock, wall_clock) -> GraphManager:
    return GraphManager(manual_adapter, grace_period=5.0, clock=clock.now, wall_clock=wall_clock.now)


@pytest.fixture
def orchestrator(adapter, clock, wall_clock) -> Orchestrator:
    config = EngineConfig(backend="dry-run", grace_period=5.0)
    return Orchestrator(adapter, config=config, clock=wall_clock.now, monotonic=clock.now)


@pytest.fixture
def recorder(orchestrator) -> EventRecorder:
    return EventRecorder(orchestrator.events)


def add_source(graph: GraphManager, node_id: str, **extra) -> str:
    return graph.add_node("source", {"uri": f"test://{node_id}", **extra}, node_id=node_id)


def add_mixer(graph: GraphManager, node_id: str = "mix", **config) -> str:
    return graph.add_node("mixer", config, node_id=node_id)


def add_sink(graph: GraphManager, node_id: str = "out") -> str:
    return graph.add_node("destination", {"type": "fake"}, node_id=node_id)
