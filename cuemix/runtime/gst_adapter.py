"""
GStreamer-backed pipeline adapter.

Every node gets its own ``Gst.Pipeline``.  Sources and mixers end in an
``appsink`` whose samples are forwarded to the ``appsrc`` consumers of the
nodes they are linked to, so that pipelines can be started, stopped and
rewired independently of each other.  Each pipeline has a bus monitor thread
that turns bus messages into :class:`~cuemix.runtime.adapter.PipelineEvent`.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import PipelineError, PipelineUnavailableError
from .adapter import (
    ElementHandle,
    ElementState,
    PipelineAdapter,
    PipelineEvent,
    PipelineEventType,
    SlotKey,
)

LOG = logging.getLogger(__name__)

BUS_POLL_INTERVAL_NS = 100_000_000  # 100ms
CONSUMER_MAX_TIME_NS = 500_000_000

_GST_INITIALISED = False
_GST_INIT_LOCK = threading.RLock()

try:  # pragma: no cover - availability depends on host environment
    import gi  # type: ignore

    gi.require_version("Gst", "1.0")
    from gi.repository import Gst  # type: ignore
except (ImportError, ValueError) as exc:  # pragma: no cover
    Gst = None  # type: ignore[assignment]
    _GST_IMPORT_ERROR: Optional[BaseException] = exc
else:  # pragma: no cover - executed only when GStreamer is present
    _GST_IMPORT_ERROR = None


def gst_available() -> bool:
    return Gst is not None


def _ensure_gst_initialised() -> None:
    global _GST_INITIALISED
    with _GST_INIT_LOCK:
        if _GST_INITIALISED:
            return
        Gst.init(None)
        _GST_INITIALISED = True


class StreamProducer:
    """
    Forwards the samples of one ``appsink`` to any number of ``appsrc``
    consumers.  Samples are dropped while forwarding is disabled.
    """

    def __init__(self, appsink: "Gst.Element") -> None:
        self.appsink = appsink
        self._lock = threading.Lock()
        self._consumers: Dict[str, "Gst.Element"] = {}
        self._forwarding = False
        appsink.set_property("emit-signals", True)
        appsink.connect("new-sample", self._on_new_sample)

    def add_consumer(self, consumer_id: str, appsrc: "Gst.Element") -> None:
        with self._lock:
            if consumer_id in self._consumers:
                LOG.error("Consumer %s already attached to %s", consumer_id, self.appsink.get_name())
                return
            appsrc.set_property("max-bytes", 0)
            if appsrc.find_property("max-buffers") is not None:
                appsrc.set_property("max-buffers", 0)
            if appsrc.find_property("max-time") is not None:
                appsrc.set_property("max-time", CONSUMER_MAX_TIME_NS)
            if appsrc.find_property("leaky-type") is not None:
                appsrc.set_property("leaky-type", 2)
            self._consumers[consumer_id] = appsrc
        LOG.debug("Consumer %s attached to %s", consumer_id, self.appsink.get_name())

    def remove_consumer(self, consumer_id: str) -> None:
        with self._lock:
            removed = self._consumers.pop(consumer_id, None)
        if removed is None:
            LOG.debug("Consumer %s not attached to %s", consumer_id, self.appsink.get_name())

    def clear(self) -> None:
        with self._lock:
            self._consumers.clear()

    def set_forwarding(self, enabled: bool) -> None:
        with self._lock:
            self._forwarding = enabled

    def _on_new_sample(self, appsink: "Gst.Element") -> "Gst.FlowReturn":
        sample = appsink.emit("pull-sample")
        if sample is None:
            return Gst.FlowReturn.FLUSHING
        with self._lock:
            if not self._forwarding:
                return Gst.FlowReturn.OK
            consumers = list(self._consumers.items())
        for consumer_id, appsrc in consumers:
            result = appsrc.emit("push-sample", sample)
            if result not in (Gst.FlowReturn.OK, Gst.FlowReturn.FLUSHING):
                LOG.debug("Consumer %s refused sample: %s", consumer_id, result)
        return Gst.FlowReturn.OK


@dataclass
class SlotBranch:
    appsrc: "Gst.Element"
    elements: List["Gst.Element"]
    pad: Optional["Gst.Pad"] = None


class BasePlateTimer:
    """
    Decides when a mixer's base plate shows: only once no slot has delivered a
    buffer for ``timeout_ms``.  It is hidden again as soon as input returns.
    """

    def __init__(self, timeout_ms: int, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._timeout_ms = int(timeout_ms)
        self._last_input = monotonic()
        self.visible = False

    def set_timeout(self, timeout_ms: int) -> None:
        with self._lock:
            self._timeout_ms = int(timeout_ms)

    def note_input(self) -> None:
        with self._lock:
            self._last_input = self._monotonic()

    def poll(self) -> Optional[bool]:
        """Return the new visibility when it changed, ``None`` otherwise."""

        with self._lock:
            idle_ms = (self._monotonic() - self._last_input) * 1000.0
            visible = idle_ms >= self._timeout_ms
            if visible == self.visible:
                return None
            self.visible = visible
            return visible


@dataclass
class GstElementRecord:
    handle: ElementHandle
    params: Dict[str, Any]
    pipeline: "Gst.Pipeline"
    producer: Optional[StreamProducer] = None
    input_appsrc: Optional["Gst.Element"] = None
    compositor: Optional["Gst.Element"] = None
    caps_filter: Optional["Gst.Element"] = None
    plate_pad: Optional["Gst.Pad"] = None
    plate_timer: Optional[BasePlateTimer] = None
    slots: Dict[SlotKey, SlotBranch] = field(default_factory=dict)
    pending: Optional[ElementState] = None
    bus_stop: threading.Event = field(default_factory=threading.Event)
    bus_thread: Optional[threading.Thread] = None


class GStreamerPipelineAdapter(PipelineAdapter):
    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._records: Dict[str, GstElementRecord] = {}
        self._started = False

    @property
    def is_available(self) -> bool:
        return Gst is not None

    # --------------------------------------------------------------- lifecycle

    def start(self) -> None:
        if Gst is None:
            raise PipelineUnavailableError(f"GStreamer runtime is not available ({_GST_IMPORT_ERROR})")
        _ensure_gst_initialised()
        self._started = True
        LOG.info("GStreamer runtime detected; pipeline adapter is active.")

    def stop(self) -> None:
        if not self._started:
            return
        with self._lock:
            handles = [record.handle for record in self._records.values()]
        for handle in handles:
            self.release(handle)
        self._started = False

    # ---------------------------------------------------------------- elements

    def create_element(self, node_id: str, kind: str, params: Mapping[str, Any]) -> ElementHandle:
        if not self._started:
            raise PipelineUnavailableError("GStreamer adapter is not started")
        handle = ElementHandle(id=f"{kind}-{node_id}-{next(self._ids)}", node_id=node_id, kind=str(kind))
        pipeline = Gst.Pipeline.new(handle.id)
        record = GstElementRecord(handle=handle, params=dict(params), pipeline=pipeline)
        try:
            if handle.kind == "source":
                self._build_source(record)
            elif handle.kind == "mixer":
                self._build_mixer(record)
            elif handle.kind == "destination":
                self._build_destination(record)
            else:
                raise PipelineError(f"Unsupported element kind '{kind}'")
        except PipelineError:
            pipeline.set_state(Gst.State.NULL)
            raise
        with self._lock:
            self._records[handle.id] = record
        self._start_bus_monitor(record)
        LOG.debug("GStreamer pipeline created: %s", handle.id)
        return handle

    def set_state(self, handle: ElementHandle, target: ElementState) -> None:
        record = self._record(handle)
        if target == ElementState.NULL:
            if record.producer is not None:
                record.producer.set_forwarding(False)
            record.pending = None
            record.pipeline.set_state(Gst.State.NULL)
            self._emit(PipelineEvent(handle=handle, type=PipelineEventType.STATE_REACHED, state=ElementState.NULL))
            return

        record.pending = ElementState.PLAYING
        result = record.pipeline.set_state(Gst.State.PLAYING)
        if result == Gst.StateChangeReturn.FAILURE:
            record.pending = None
            self._emit(
                PipelineEvent(handle=handle, type=PipelineEventType.ERROR, reason="failed to set PLAYING")
            )
            return
        if record.producer is not None:
            record.producer.set_forwarding(True)

    def link(
        self,
        upstream: ElementHandle,
        downstream: ElementHandle,
        slot: SlotKey,
        config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        producer_record = self._record(upstream)
        consumer_record = self._record(downstream)
        if producer_record.producer is None:
            raise PipelineError(f"Element '{upstream.id}' has no output")

        if consumer_record.compositor is not None:
            branch = self._add_slot_branch(consumer_record, slot)
            for key, value in (config or {}).items():
                self._apply_slot_property(consumer_record, slot, key, value)
            appsrc = branch.appsrc
        elif consumer_record.input_appsrc is not None:
            appsrc = consumer_record.input_appsrc
        else:
            raise PipelineError(f"Element '{downstream.id}' has no input")
        producer_record.producer.add_consumer(self._consumer_id(downstream, slot), appsrc)

    def unlink(self, upstream: ElementHandle, downstream: ElementHandle, slot: SlotKey) -> None:
        with self._lock:
            producer_record = self._records.get(upstream.id)
            consumer_record = self._records.get(downstream.id)
        if producer_record is not None and producer_record.producer is not None:
            producer_record.producer.remove_consumer(self._consumer_id(downstream, slot))
        if consumer_record is not None and consumer_record.compositor is not None:
            self._remove_slot_branch(consumer_record, slot)

    def set_property(
        self,
        handle: ElementHandle,
        name: str,
        value: Any,
        *,
        slot: SlotKey = None,
    ) -> None:
        record = self._record(handle)
        if slot is not None:
            self._apply_slot_property(record, slot, name, value)
            return
        record.params[name] = value
        if name in ("width", "height") and record.caps_filter is not None:
            record.caps_filter.set_property("caps", self._mixer_caps(record.params))
        elif name == "fallback_timeout" and record.plate_timer is not None:
            record.plate_timer.set_timeout(value)
        else:
            LOG.debug("Setting %s=%r on %s has no live effect", name, value, handle.id)

    def release(self, handle: ElementHandle) -> None:
        with self._lock:
            record = self._records.pop(handle.id, None)
            others = list(self._records.values())
        if record is None:
            return
        consumer_prefix = f"{handle.id}:"
        for other in others:
            if other.producer is not None:
                for consumer_id in [f"{consumer_prefix}{slot}" for slot in list(record.slots) + [None]]:
                    other.producer.remove_consumer(consumer_id)
        if record.producer is not None:
            record.producer.clear()
            record.producer.set_forwarding(False)
        record.pipeline.set_state(Gst.State.NULL)
        self._stop_bus_monitor(record)
        LOG.debug("GStreamer pipeline released: %s", handle.id)

    # ---------------------------------------------------------------- builders

    def _build_source(self, record: GstElementRecord) -> None:
        name = record.handle.id
        uri = str(record.params.get("uri", ""))
        convert = self._make("videoconvert", f"{name}_convert")
        scale = self._make("videoscale", f"{name}_scale")
        appsink = self._make_appsink(f"{name}_sink")
        for element in (convert, scale, appsink):
            record.pipeline.add(element)
        if not self._link_many(convert, scale, appsink):
            raise PipelineError(f"Failed to link source chain for '{name}'")

        pattern = record.params.get("pattern")
        if pattern:
            source = self._make("videotestsrc", f"{name}_testsrc")
            source.set_property("is-live", True)
            try:
                source.set_property("pattern", int(pattern) if pattern.isdigit() else pattern)
            except (TypeError, ValueError):
                LOG.warning("Unsupported test pattern '%s'; using default.", pattern)
            record.pipeline.add(source)
            if not source.link(convert):
                raise PipelineError(f"Failed to link test source for '{name}'")
        else:
            decodebin = self._make("uridecodebin", f"{name}_decode")
            decodebin.set_property("uri", uri)
            decodebin.connect("pad-added", self._on_decodebin_pad_added, convert)
            record.pipeline.add(decodebin)
        record.producer = StreamProducer(appsink)

    def _build_mixer(self, record: GstElementRecord) -> None:
        name = record.handle.id
        compositor = self._make("compositor", f"{name}_compositor")
        if compositor.find_property("ignore-inactive-pads") is not None:
            compositor.set_property("ignore-inactive-pads", True)
        if compositor.find_property("background") is not None:
            compositor.set_property("background", 1)  # black
        caps_filter = self._make("capsfilter", f"{name}_caps")
        caps_filter.set_property("caps", self._mixer_caps(record.params))
        convert = self._make("videoconvert", f"{name}_convert")
        appsink = self._make_appsink(f"{name}_sink")
        for element in (compositor, caps_filter, convert, appsink):
            record.pipeline.add(element)
        if not self._link_many(compositor, caps_filter, convert, appsink):
            raise PipelineError(f"Failed to link mixer chain for '{name}'")
        self._build_base_plate(record, compositor)
        record.compositor = compositor
        record.caps_filter = caps_filter
        record.producer = StreamProducer(appsink)

    def _build_base_plate(self, record: GstElementRecord, compositor: "Gst.Element") -> None:
        name = record.handle.id
        image = record.params.get("fallback_image") or ""
        if image:
            source = self._make("uridecodebin", f"{name}_plate_decode")
            source.set_property("uri", image if "://" in image else f"file://{image}")
            freeze = self._make("imagefreeze", f"{name}_plate_freeze")
            head: "Gst.Element" = freeze
            elements: Tuple["Gst.Element", ...] = (source, freeze)
        else:
            source = self._make("videotestsrc", f"{name}_plate")
            source.set_property("is-live", True)
            source.set_property("pattern", "black")
            head = source
            elements = (source,)
        convert = self._make("videoconvert", f"{name}_plate_convert")
        scale = self._make("videoscale", f"{name}_plate_scale")
        for element in (*elements, convert, scale):
            record.pipeline.add(element)
        if image:
            source.connect("pad-added", self._on_decodebin_pad_added, head)
        if not self._link_many(head, convert, scale):
            raise PipelineError(f"Failed to link base plate for '{name}'")
        pad = compositor.get_request_pad("sink_%u")
        if pad is None:
            raise PipelineError("Failed to request base plate pad from compositor")
        pad.set_property("zorder", 0)
        pad.set_property("alpha", 0.0)
        if scale.get_static_pad("src").link(pad) != Gst.PadLinkReturn.OK:
            raise PipelineError(f"Failed to link base plate into compositor for '{name}'")
        record.plate_pad = pad
        record.plate_timer = BasePlateTimer(record.params.get("fallback_timeout", 500))

    def _build_destination(self, record: GstElementRecord) -> None:
        name = record.handle.id
        dest_type = record.params.get("type", "fake")
        appsrc = self._make("appsrc", f"{name}_src")
        appsrc.set_property("is-live", True)
        appsrc.set_property("format", Gst.Format.TIME)
        queue = self._make_queue(f"{name}_queue")
        convert = self._make("videoconvert", f"{name}_convert")
        chain: List["Gst.Element"] = [appsrc, queue, convert]

        if dest_type == "screen":
            sink = self._make("autovideosink", f"{name}_sink")
        elif dest_type == "fake":
            sink = self._make("fakesink", f"{name}_sink")
        elif dest_type == "file":
            chain += [self._make("x264enc", f"{name}_enc"), self._make("matroskamux", f"{name}_mux")]
            sink = self._make("filesink", f"{name}_sink")
            sink.set_property("location", record.params.get("location"))
        elif dest_type == "rtmp":
            encoder = self._make("x264enc", f"{name}_enc")
            encoder.set_property("tune", "zerolatency")
            muxer = self._make("flvmux", f"{name}_mux")
            muxer.set_property("streamable", True)
            chain += [encoder, muxer]
            sink = self._make("rtmpsink", f"{name}_sink")
            sink.set_property("location", record.params.get("location"))
        else:
            raise PipelineError(f"Unsupported destination type '{dest_type}'")
        if sink.find_property("sync") is not None:
            sink.set_property("sync", bool(record.params.get("sync", True)))
        chain.append(sink)

        for element in chain:
            record.pipeline.add(element)
        if not self._link_many(*chain):
            raise PipelineError(f"Failed to link {dest_type} destination '{name}'")
        record.input_appsrc = appsrc

    def _add_slot_branch(self, record: GstElementRecord, slot: SlotKey) -> SlotBranch:
        with self._lock:
            existing = record.slots.get(slot)
            if existing is not None:
                return existing
        name = f"{record.handle.id}_slot_{slot}"
        appsrc = self._make("appsrc", f"{name}_src")
        appsrc.set_property("is-live", True)
        appsrc.set_property("format", Gst.Format.TIME)
        queue = self._make_queue(f"{name}_queue")
        convert = self._make("videoconvert", f"{name}_convert")
        scale = self._make("videoscale", f"{name}_scale")
        elements = [appsrc, queue, convert, scale]
        for element in elements:
            record.pipeline.add(element)
        if not self._link_many(*elements):
            raise PipelineError(f"Failed to link slot branch {name}")
        appsrc.get_static_pad("src").add_probe(Gst.PadProbeType.BUFFER, self._on_slot_buffer, record)
        pad = record.compositor.get_request_pad("sink_%u")
        if pad is None:
            raise PipelineError(f"Failed to request compositor pad for {name}")
        pad.set_property("zorder", 1 + len(record.slots))
        if scale.get_static_pad("src").link(pad) != Gst.PadLinkReturn.OK:
            raise PipelineError(f"Failed to link slot branch {name} into compositor")
        for element in elements:
            element.sync_state_with_parent()
        branch = SlotBranch(appsrc=appsrc, elements=elements, pad=pad)
        with self._lock:
            record.slots[slot] = branch
        return branch

    def _remove_slot_branch(self, record: GstElementRecord, slot: SlotKey) -> None:
        with self._lock:
            branch = record.slots.pop(slot, None)
        if branch is None:
            return
        for element in branch.elements:
            element.set_state(Gst.State.NULL)
            record.pipeline.remove(element)
        if branch.pad is not None:
            record.compositor.release_request_pad(branch.pad)

    def _apply_slot_property(self, record: GstElementRecord, slot: SlotKey, key: str, value: Any) -> None:
        media, _, prop = key.partition("::")
        branch = record.slots.get(slot)
        if media != "video" or branch is None or branch.pad is None:
            LOG.debug("Slot property %s on %s[%s] not applied by this backend", key, record.handle.id, slot)
            return
        try:
            branch.pad.set_property(prop, value)
        except (TypeError, ValueError) as exc:
            raise PipelineError(f"Cannot set {key}={value!r} on {record.handle.id}[{slot}]: {exc}") from exc

    # ---------------------------------------------------------------- bus

    def _start_bus_monitor(self, record: GstElementRecord) -> None:
        bus = record.pipeline.get_bus()
        if not bus:
            LOG.warning("Pipeline bus is not available for %s; skipping bus monitoring.", record.handle.id)
            return
        mask = Gst.MessageType.ERROR | Gst.MessageType.EOS | Gst.MessageType.STATE_CHANGED

        def _loop() -> None:
            while not record.bus_stop.is_set():
                message = bus.timed_pop_filtered(BUS_POLL_INTERVAL_NS, mask)
                if message is not None:
                    self._handle_bus_message(record, message)
                self._update_base_plate(record)

        thread = threading.Thread(target=_loop, name=f"cuemix-gst-bus-{record.handle.node_id}", daemon=True)
        thread.start()
        record.bus_thread = thread

    def _stop_bus_monitor(self, record: GstElementRecord) -> None:
        record.bus_stop.set()
        thread = record.bus_thread
        if thread and thread.is_alive() and threading.current_thread() is not thread:
            thread.join(timeout=1.0)
        record.bus_thread = None

    def _handle_bus_message(self, record: GstElementRecord, message: "Gst.Message") -> None:
        msg_type = message.type
        handle = record.handle
        if msg_type == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            LOG.error("GStreamer error on %s: %s (%s)", handle.id, err, debug)
            record.pending = None
            self._emit(PipelineEvent(handle=handle, type=PipelineEventType.ERROR, reason=str(err)))
        elif msg_type == Gst.MessageType.EOS:
            self._emit(PipelineEvent(handle=handle, type=PipelineEventType.END_OF_STREAM))
        elif msg_type == Gst.MessageType.STATE_CHANGED and message.src == record.pipeline:
            _old, new_state, _pending = message.parse_state_changed()
            if new_state == Gst.State.PLAYING and record.pending == ElementState.PLAYING:
                record.pending = None
                self._emit(
                    PipelineEvent(handle=handle, type=PipelineEventType.STATE_REACHED, state=ElementState.PLAYING)
                )

    def _on_slot_buffer(
        self, _pad: "Gst.Pad", _info: "Gst.PadProbeInfo", record: GstElementRecord
    ) -> "Gst.PadProbeReturn":
        if record.plate_timer is not None:
            record.plate_timer.note_input()
        return Gst.PadProbeReturn.OK

    def _update_base_plate(self, record: GstElementRecord) -> None:
        if record.plate_timer is None or record.plate_pad is None:
            return
        visible = record.plate_timer.poll()
        if visible is None:
            return
        record.plate_pad.set_property("alpha", 1.0 if visible else 0.0)
        LOG.info("Base plate on %s %s", record.handle.node_id, "shown" if visible else "hidden")

    # ---------------------------------------------------------------- helpers

    def _record(self, handle: ElementHandle) -> GstElementRecord:
        with self._lock:
            record = self._records.get(handle.id)
        if record is None:
            raise PipelineError(f"Element '{handle.id}' does not exist")
        return record

    @staticmethod
    def _consumer_id(downstream: ElementHandle, slot: SlotKey) -> str:
        return f"{downstream.id}:{slot}"

    @staticmethod
    def _mixer_caps(params: Mapping[str, Any]) -> "Gst.Caps":
        return Gst.Caps.from_string(
            f"video/x-raw,width={int(params.get('width', 1920))},height={int(params.get('height', 1080))}"
        )

    @staticmethod
    def _make(factory: str, name: str) -> "Gst.Element":
        element = Gst.ElementFactory.make(factory, name)
        if not element:
            raise PipelineError(f"Failed to create GStreamer element '{factory}'")
        return element

    def _make_appsink(self, name: str) -> "Gst.Element":
        appsink = self._make("appsink", name)
        appsink.set_property("sync", True)
        appsink.set_property("max-buffers", 1)
        appsink.set_property("drop", True)
        return appsink

    def _make_queue(self, name: str, *, leaky: int = 2) -> "Gst.Element":
        queue = self._make("queue", name)
        queue.set_property("max-size-buffers", 0)
        queue.set_property("max-size-bytes", 0)
        queue.set_property("max-size-time", 5 * Gst.SECOND)
        queue.set_property("leaky", int(leaky))
        return queue

    def _link_many(self, *elements: "Gst.Element") -> bool:
        for idx in range(len(elements) - 1):
            upstream = elements[idx]
            downstream = elements[idx + 1]
            if not upstream.link(downstream):
                LOG.debug("Failed to link %s -> %s", upstream.get_name(), downstream.get_name())
                return False
        return True

    def _on_decodebin_pad_added(self, decodebin: "Gst.Element", pad: "Gst.Pad", target: "Gst.Element") -> None:
        caps = pad.get_current_caps() or pad.query_caps(None)
        if not caps or not caps.to_string().startswith("video/"):
            return
        sink_pad = target.get_static_pad("sink")
        if sink_pad.is_linked():
            return
        if pad.link(sink_pad) != Gst.PadLinkReturn.OK:
            LOG.error("Failed to link decoded pad of %s", decodebin.get_name())
