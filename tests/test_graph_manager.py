from __future__ import annotations

import json
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import EPOCH, EventRecorder, add_mixer, add_sink, add_source
from cuemix.errors import (
    GraphError,
    InvalidConfig,
    InvalidTopology,
    PipelineError,
    UnknownConnection,
    UnknownNode,
)
from cuemix.graph.controllers import ControlMode, ControlPoint
from cuemix.graph.manager import GraphManager
from cuemix.graph.node import NodeKind, NodeState
from cuemix.runtime.adapter import (
    DryRunPipelineAdapter,
    ElementHandle,
    ElementState,
    PipelineEvent,
    PipelineEventType,
)


def test_add_node_rejects_duplicates_and_bad_config(graph) -> None:
    add_source(graph, "cam")

    with pytest.raises(InvalidConfig):
        add_source(graph, "cam")
    with pytest.raises(InvalidConfig):
        graph.add_node("encoder", {}, node_id="enc")
    with pytest.raises(InvalidConfig):
        graph.add_node("source", {}, node_id="nouri")
    with pytest.raises(InvalidConfig):
        graph.add_node("mixer", {"brightness": 3}, node_id="mix")
    with pytest.raises(InvalidConfig):
        graph.add_node("destination", {"type": "rtmp", "location": "http://nope"}, node_id="out")

    assert graph.node_ids() == ["cam"]


def test_add_node_generates_ids_and_creates_elements(graph, adapter) -> None:
    node_id = graph.add_node("mixer", {"slot_names": ["main", "pip"]})

    assert len(node_id) == 32
    node = graph.node(node_id)
    assert node.kind == NodeKind.MIXER
    assert node.state == NodeState.STOPPED
    assert adapter.elements[node.handle.id].params["slot_names"] == ["main", "pip"]


def test_connect_builds_a_program_chain(graph, adapter) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    add_sink(graph, "out")
    recorder = EventRecorder(graph.events)

    conn = graph.connect("cam", "mix", 0, {"video::alpha": 0.5, "video::zorder": 2})
    graph.connect("mix", "out")

    assert conn.config == {"video::alpha": 0.5, "video::zorder": 2}
    assert graph.feed_of("mix", 0) == "cam"
    assert graph.feed_of("out", None) == "mix"
    mixer = graph.node("mix")
    assert adapter.elements[mixer.handle.id].properties[(0, "video::alpha")] == 0.5
    assert recorder.kinds() == ["connected", "connected"]
    assert recorder.events[0].detail == {"src": "cam", "dst": "mix", "slot": 0}


@pytest.mark.parametrize(
    "src, dst, slot",
    [
        ("cam", "cam2", None),  # sources have no inputs
        ("out", "mix", 1),  # destinations have no outputs
        ("cam", "mix", 7),  # slot out of range
        ("cam", "mix", None),  # mixers need a slot
        ("cam", "out", 1),  # destinations have one slot
        ("mix", "mix", 1),  # self loop
    ],
)
def test_connect_rejects_invalid_edges(graph, src, dst, slot) -> None:
    add_source(graph, "cam")
    add_source(graph, "cam2")
    add_mixer(graph, "mix")
    add_sink(graph, "out")

    with pytest.raises(InvalidTopology):
        graph.connect(src, dst, slot)
    assert graph.connections() == []


def test_connect_rejects_occupied_slot_and_mixer_fan_out(graph) -> None:
    add_source(graph, "cam")
    add_source(graph, "cam2")
    add_mixer(graph, "mix")
    add_sink(graph, "out")
    add_sink(graph, "out2")
    graph.connect("cam", "mix", 0)
    graph.connect("mix", "out")

    with pytest.raises(InvalidTopology):
        graph.connect("cam2", "mix", "0")
    with pytest.raises(InvalidTopology):
        graph.connect("mix", "out2")

    graph.connect("cam2", "mix", "1")
    assert graph.feed_of("mix", 1) == "cam2"


def test_connect_rejects_cycles_between_mixers(graph) -> None:
    add_mixer(graph, "a")
    add_mixer(graph, "b")
    add_mixer(graph, "c")
    graph.connect("a", "b", 0)
    graph.connect("b", "c", 0)

    with pytest.raises(InvalidTopology):
        graph.connect("c", "a", 0)


def test_named_slots(graph) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix", slot_names=["main", "pip"])

    graph.connect("cam", "mix", "pip")

    assert graph.feed_of("mix", "pip") == "cam"
    with pytest.raises(InvalidTopology):
        graph.connect("cam", "mix", 0)


def test_slot_config_is_validated(graph) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    add_sink(graph, "out")

    with pytest.raises(InvalidConfig):
        graph.connect("cam", "mix", 0, {"video::alpha": 3})
    with pytest.raises(InvalidConfig):
        graph.connect("cam", "mix", 0, {"alpha": 1})
    with pytest.raises(InvalidConfig):
        graph.connect("mix", "out", None, {"video::alpha": 1})
    assert graph.connections() == []


def test_failed_link_has_no_side_effect(graph, adapter) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    adapter.release(graph.node("mix").handle)

    with pytest.raises(PipelineError):
        graph.connect("cam", "mix", 0)
    assert graph.connections() == []


def test_disconnect_errors(graph) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")

    with pytest.raises(UnknownNode):
        graph.disconnect("ghost", "mix", 0)
    with pytest.raises(UnknownConnection):
        graph.disconnect("cam", "mix", 0)
    with pytest.raises(UnknownConnection):
        graph.disconnect("cam", "mix", 9)


def test_disconnect_removes_the_link(graph, adapter) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    graph.connect("cam", "mix", 2)

    conn = graph.disconnect("cam", "mix", "2")

    assert conn.slot == 2
    assert graph.connections() == []
    assert adapter.links == set()


def test_reroute_keeps_slot_config(graph, adapter) -> None:
    add_source(graph, "cam")
    add_source(graph, "spare")
    add_mixer(graph, "mix")
    graph.connect("cam", "mix", 0, {"video::xpos": 40})

    conn = graph.reroute("mix", 0, "cam", "spare")

    assert conn.src == "spare"
    assert conn.config == {"video::xpos": 40}
    assert graph.feed_of("mix", 0) == "spare"
    spare = graph.node("spare").handle.id
    mixer = graph.node("mix").handle.id
    assert adapter.links == {(spare, mixer, 0)}


def test_reroute_restores_old_link_on_failure(graph, adapter) -> None:
    add_source(graph, "cam")
    add_source(graph, "spare")
    add_mixer(graph, "mix")
    graph.connect("cam", "mix", 0)
    adapter.release(graph.node("spare").handle)

    with pytest.raises(PipelineError):
        graph.reroute("mix", 0, "cam", "spare")

    assert graph.feed_of("mix", 0) == "cam"
    assert (graph.node("cam").handle.id, graph.node("mix").handle.id, 0) in adapter.links


def test_remove_node_stops_and_detaches(graph, adapter) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    graph.connect("cam", "mix", 0)
    graph.request_state("cam", "started")
    handle = graph.node("cam").handle
    recorder = EventRecorder(graph.events)

    graph.remove_node("cam")

    assert not graph.has_node("cam")
    assert graph.connections() == []
    assert adapter.elements[handle.id].released
    assert adapter.history[-1] == ("cam", ElementState.NULL)
    assert recorder.kinds() == ["state-changed", "state-changed", "disconnected", "node-removed"]
    assert recorder.events[-1].state == "stopped"


def test_remove_node_forces_error_when_engine_is_silent(manual_adapter, clock, wall_clock) -> None:
    graph = GraphManager(manual_adapter, grace_period=0.05, clock=clock.now, wall_clock=wall_clock.now)
    add_source(graph, "cam")
    graph.request_state("cam", "started")
    manual_adapter.complete(graph.node("cam").handle)
    recorder = EventRecorder(graph.events)

    graph.remove_node("cam")

    assert not graph.has_node("cam")
    errors = recorder.of_kind("error")
    assert len(errors) == 1
    assert errors[0].detail["reason"].startswith("PipelineTimeout")
    assert recorder.events[-1].state == "error"


def test_removing_node_rejects_new_connections(graph) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    graph.node("cam").removing = True

    with pytest.raises(UnknownNode):
        graph.connect("cam", "mix", 0)
    with pytest.raises(UnknownNode):
        graph.request_state("cam", "started")


def test_unknown_node_operations(graph) -> None:
    with pytest.raises(UnknownNode):
        graph.remove_node("ghost")
    with pytest.raises(UnknownNode):
        graph.request_state("ghost", "started")
    with pytest.raises(UnknownNode):
        graph.node_state("ghost")


def test_events_for_other_elements_are_dropped(manual_graph) -> None:
    add_source(manual_graph, "cam")
    manual_graph.request_state("cam", "started")
    stray = ElementHandle(id="stale-element", node_id="cam", kind="source")

    event = PipelineEvent(handle=stray, type=PipelineEventType.STATE_REACHED, state=ElementState.PLAYING)

    assert manual_graph.handle_pipeline_event(event) is None
    assert manual_graph.node_state("cam") == NodeState.STARTING


def test_expire_overdue_forces_error(manual_graph, manual_adapter, clock) -> None:
    add_source(manual_graph, "cam")
    add_source(manual_graph, "cam2")
    manual_graph.request_state("cam", "started")
    clock.advance(1.0)
    manual_graph.request_state("cam2", "started")
    manual_adapter.complete(manual_graph.node("cam2").handle)

    clock.advance(4.5)
    expired = manual_graph.expire_overdue()

    assert [item.node_id for item in expired] == ["cam"]
    assert manual_graph.node_state("cam") == NodeState.ERROR
    assert manual_graph.node_state("cam2") == NodeState.STARTED


def test_degraded_slots_show_in_snapshot(graph) -> None:
    add_mixer(graph, "mix")

    assert graph.mark_slot_degraded("mix", "1") is True
    assert graph.mark_slot_degraded("mix", 1) is False
    assert graph.is_degraded("mix", 1)
    assert graph.snapshot().degraded_slots == [{"mixer": "mix", "slot": 1}]

    assert graph.clear_slot_degraded("mix", 1) is True
    assert graph.snapshot().degraded_slots == []


def test_snapshot_is_json_serialisable(graph, wall_clock) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    add_sink(graph, "out")
    graph.connect("cam", "mix", 0)
    graph.connect("mix", "out")
    graph.set_cue("cam", EPOCH, EPOCH + timedelta(seconds=30))

    snapshot = graph.snapshot()
    payload = snapshot.to_dict()

    json.dumps(payload, sort_keys=True)
    assert [node["id"] for node in payload["nodes"]] == ["cam", "mix", "out"]
    assert payload["nodes"][0]["cue_time"] == EPOCH.isoformat()
    assert [(conn["src"], conn["dst"]) for conn in payload["connections"]] == [("cam", "mix"), ("mix", "out")]
    assert payload["taken_at"] == wall_clock.now().isoformat()


# ---------------------------------------------------------------- control points


def test_set_control_point_applies_mixer_setting(graph, adapter, wall_clock) -> None:
    add_mixer(graph, "mix")
    point = ControlPoint("resize", EPOCH + timedelta(seconds=10), 1280)
    graph.add_control_point("mix", "width", point)

    assert graph.synchronize_controllers(EPOCH + timedelta(seconds=5)) == 0
    assert graph.synchronize_controllers(EPOCH + timedelta(seconds=10)) == 1

    handle = graph.node("mix").handle
    assert adapter.elements[handle.id].properties[(None, "width")] == 1280
    assert graph.snapshot().nodes[0]["control_points"] == []


def test_interpolated_control_point_ramps_slot_alpha(graph, adapter) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    graph.connect("cam", "mix", 0, {"video::alpha": 0.0})
    graph.add_control_point(
        "mix",
        "video::alpha",
        ControlPoint("fade", EPOCH + timedelta(seconds=10), 1.0, ControlMode.INTERPOLATE),
        slot=0,
    )
    properties = adapter.elements[graph.node("mix").handle.id].properties

    graph.synchronize_controllers(EPOCH)
    assert properties[(0, "video::alpha")] == pytest.approx(0.0)
    graph.synchronize_controllers(EPOCH + timedelta(seconds=5))
    assert properties[(0, "video::alpha")] == pytest.approx(0.5)
    graph.synchronize_controllers(EPOCH + timedelta(seconds=10))
    assert properties[(0, "video::alpha")] == pytest.approx(1.0)


def test_control_point_validation(graph) -> None:
    add_source(graph, "cam")
    add_mixer(graph, "mix")
    when = EPOCH + timedelta(seconds=1)

    with pytest.raises(InvalidConfig):
        graph.add_control_point("cam", "width", ControlPoint("p", when, 10))
    with pytest.raises(InvalidConfig):
        graph.add_control_point("mix", "sample_rate", ControlPoint("p", when, 44100))
    with pytest.raises(InvalidConfig):
        graph.add_control_point("mix", "video::alpha", ControlPoint("p", when, 2.0), slot=0)
    with pytest.raises(InvalidConfig):
        graph.add_control_point(
            "mix", "video::zorder", ControlPoint("p", when, 3, ControlMode.INTERPOLATE), slot=0
        )
    with pytest.raises(InvalidTopology):
        graph.add_control_point("mix", "video::alpha", ControlPoint("p", when, 0.5), slot=9)


def test_control_points_replace_and_remove_by_id(graph) -> None:
    add_mixer(graph, "mix")
    graph.add_control_point("mix", "height", ControlPoint("p", EPOCH, 720))
    graph.add_control_point("mix", "height", ControlPoint("p", EPOCH, 480))

    listed = graph.snapshot().nodes[0]["control_points"]
    assert [item["value"] for item in listed[0]["points"]] == [480]

    graph.remove_control_point("mix", "p")
    assert graph.snapshot().nodes[0]["control_points"] == []
    with pytest.raises(InvalidConfig):
        graph.remove_control_point("mix", "p")


# ------------------------------------------------------------- invariants


def assert_graph_invariants(graph: GraphManager, adapter: DryRunPipelineAdapter) -> None:
    connections = graph.connections()
    kinds = {node_id: graph.node(node_id).kind for node_id in graph.node_ids()}

    feeds = [(conn.dst, conn.slot) for conn in connections]
    assert len(feeds) == len(set(feeds)), "a slot has more than one feed"

    for conn in connections:
        assert kinds[conn.dst] != NodeKind.SOURCE
        assert kinds[conn.src] != NodeKind.DESTINATION

    mixer_outputs = [conn.src for conn in connections if kinds[conn.src] == NodeKind.MIXER]
    assert len(mixer_outputs) == len(set(mixer_outputs)), "a mixer feeds more than one node"

    edges = {}
    for conn in connections:
        edges.setdefault(conn.src, set()).add(conn.dst)

    def visit(node_id, trail):
        assert node_id not in trail, "cycle detected"
        for target in edges.get(node_id, ()):
            visit(target, trail | {node_id})

    for node_id in kinds:
        visit(node_id, frozenset())

    expected_links = {
        (graph.node(conn.src).handle.id, graph.node(conn.dst).handle.id, conn.slot) for conn in connections
    }
    assert adapter.links == expected_links


def test_random_connect_disconnect_sequences_keep_invariants(graph, adapter) -> None:
    rng = random.Random(20240501)
    sources = [add_source(graph, f"cam{index}") for index in range(4)]
    mixers = [add_mixer(graph, f"mix{index}", slots=3) for index in range(3)]
    sinks = [add_sink(graph, f"out{index}") for index in range(2)]
    nodes = sources + mixers + sinks
    slots = [None, 0, 1, 2, 3, "1"]

    for _ in range(400):
        src = rng.choice(nodes)
        dst = rng.choice(nodes)
        slot = rng.choice(slots)
        try:
            if rng.random() < 0.65:
                graph.connect(src, dst, slot)
            else:
                graph.disconnect(src, dst, slot)
        except GraphError:
            pass
        assert_graph_invariants(graph, adapter)


def test_concurrent_connects_to_one_slot_have_a_single_winner(graph) -> None:
    sources = [add_source(graph, f"cam-{index}") for index in range(8)]
    add_mixer(graph, "mix", slots=1)
    barrier = threading.Barrier(len(sources))

    def attempt(src: str) -> str:
        barrier.wait(timeout=5)
        try:
            graph.connect(src, "mix", 0)
        except InvalidTopology:
            return "rejected"
        return "connected"

    with ThreadPoolExecutor(max_workers=len(sources)) as pool:
        outcomes = list(pool.map(attempt, sources))

    assert outcomes.count("connected") == 1
    winner = sources[outcomes.index("connected")]
    assert graph.feed_of("mix", 0) == winner
    assert [(conn.src, conn.slot) for conn in graph.connections()] == [(winner, 0)]
