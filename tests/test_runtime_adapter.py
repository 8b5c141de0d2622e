from __future__ import annotations

import json

import pytest

from cuemix.errors import PipelineError, PipelineUnavailableError
from cuemix.graph.sources import SourceConfig
from cuemix.runtime.adapter import (
    DryRunPipelineAdapter,
    ElementHandle,
    ElementState,
    PipelineEvent,
    PipelineEventType,
)
from cuemix.runtime.gst_adapter import BasePlateTimer, GStreamerPipelineAdapter, gst_available


def test_dry_run_acknowledges_immediately() -> None:
    adapter = DryRunPipelineAdapter()
    events = []
    adapter.subscribe(events.append)
    handle = adapter.create_element("cam", "source", {"uri": "test://smpte"})

    adapter.set_state(handle, ElementState.PLAYING)

    assert events == [PipelineEvent(handle=handle, type=PipelineEventType.STATE_REACHED, state=ElementState.PLAYING)]
    assert adapter.elements[handle.id].state == ElementState.PLAYING
    assert adapter.pending(handle) is None


def test_dry_run_manual_mode_waits_for_the_caller() -> None:
    adapter = DryRunPipelineAdapter(auto_ack=False)
    events = []
    token = adapter.subscribe(events.append)
    handle = adapter.create_element("cam", "source", {})

    adapter.set_state(handle, ElementState.PLAYING)
    assert events == []
    assert adapter.pending(handle) == ElementState.PLAYING

    adapter.fail(handle, reason="no signal")
    adapter.end_of_stream(handle)
    adapter.unsubscribe(token)
    adapter.complete(handle, ElementState.NULL)

    assert [(event.type, event.reason) for event in events] == [
        (PipelineEventType.ERROR, "no signal"),
        (PipelineEventType.END_OF_STREAM, None),
    ]


def test_dry_run_links_and_properties() -> None:
    adapter = DryRunPipelineAdapter()
    source = adapter.create_element("cam", "source", {})
    mixer = adapter.create_element("mix", "mixer", {"slots": 2})

    adapter.link(source, mixer, 1, {"video::alpha": 0.5})
    adapter.set_property(mixer, "width", 1280)

    assert adapter.links == {(source.id, mixer.id, 1)}
    assert adapter.elements[mixer.id].properties == {(1, "video::alpha"): 0.5, (None, "width"): 1280}

    adapter.release(source)
    assert adapter.links == set()
    with pytest.raises(PipelineError):
        adapter.set_state(source, ElementState.PLAYING)
    adapter.release(source)


def test_failing_observer_does_not_block_others() -> None:
    adapter = DryRunPipelineAdapter()
    seen = []

    def broken(event) -> None:
        raise RuntimeError("observer bug")

    adapter.subscribe(broken)
    adapter.subscribe(seen.append)
    handle = adapter.create_element("cam", "source", {})
    adapter.set_state(handle, ElementState.PLAYING)

    assert len(seen) == 1


def test_element_params_are_json_serialisable() -> None:
    adapter = DryRunPipelineAdapter()
    handle = adapter.create_element("out", "destination", {"type": "file", "location": "/tmp/show.mkv", "sync": True})

    json.dumps(adapter.elements[handle.id].params, sort_keys=True)


def test_gstreamer_adapter_refuses_elements_before_start() -> None:
    adapter = GStreamerPipelineAdapter()

    with pytest.raises(PipelineUnavailableError):
        adapter.create_element("cam", "source", {"uri": "test://smpte"})
    with pytest.raises(PipelineError):
        adapter.set_state(ElementHandle(id="ghost", node_id="ghost", kind="source"), ElementState.PLAYING)

    # Stop without start is a no-op.
    adapter.stop()


@pytest.mark.skipif(gst_available(), reason="GStreamer is installed")
def test_gstreamer_adapter_reports_missing_runtime() -> None:
    adapter = GStreamerPipelineAdapter()

    assert adapter.is_available is False
    with pytest.raises(PipelineUnavailableError):
        adapter.start()


@pytest.mark.skipif(not gst_available(), reason="GStreamer is not installed")
def test_gstreamer_adapter_builds_test_pattern_source() -> None:
    adapter = GStreamerPipelineAdapter()
    adapter.start()
    try:
        handle = adapter.create_element("cam", "source", SourceConfig.from_mapping({"uri": "test://smpte"}).to_params())
        adapter.set_state(handle, ElementState.NULL)
        adapter.release(handle)
    finally:
        adapter.stop()


def test_base_plate_shows_only_after_input_stalls(clock) -> None:
    timer = BasePlateTimer(500, monotonic=clock.now)

    assert timer.poll() is None
    clock.advance(0.4)
    timer.note_input()
    clock.advance(0.4)
    assert timer.poll() is None
    assert timer.visible is False

    clock.advance(0.2)
    assert timer.poll() is True
    assert timer.poll() is None

    timer.note_input()
    assert timer.poll() is False
    assert timer.visible is False


def test_base_plate_timeout_can_change_live(clock) -> None:
    timer = BasePlateTimer(1000, monotonic=clock.now)
    clock.advance(0.3)
    assert timer.poll() is None

    timer.set_timeout(200)
    assert timer.poll() is True

    timer.set_timeout(0)
    timer.note_input()
    assert timer.poll() is None
    assert timer.visible is True


@pytest.mark.skipif(not gst_available(), reason="GStreamer is not installed")
def test_gstreamer_mixer_base_plate_starts_hidden() -> None:
    adapter = GStreamerPipelineAdapter()
    adapter.start()
    try:
        handle = adapter.create_element("program", "mixer", {"slots": 2, "fallback_timeout": 60000})
        record = adapter._record(handle)
        assert record.plate_pad.get_property("alpha") == 0.0
        adapter.set_property(handle, "fallback_timeout", 30000)
        assert record.plate_timer.visible is False
        adapter.release(handle)
    finally:
        adapter.stop()
