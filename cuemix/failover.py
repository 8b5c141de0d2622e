"""
Reactive mixer slot failover.

The controller listens to graph events.  When the primary feed of an armed
binding enters ``error`` it re-routes the slot to the first usable backup,
disarms the binding and publishes a ``failover`` event.  If no backup can
take over, the primary is detached, the slot is left unfed and marked
degraded.
"""

from __future__ import annotations

import logging
import queue
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import (
    IllegalTransition,
    InvalidConfig,
    InvalidTopology,
    PipelineError,
    UnknownConnection,
    UnknownNode,
)
from .events import EventHub, EventKind, GraphEvent
from .graph.manager import GraphManager
from .graph.node import NodeKind, NodeState
from .runtime.adapter import SlotKey

LOG = logging.getLogger(__name__)

BindingKey = Tuple[str, SlotKey]

UNUSABLE_STATES = {NodeState.ERROR, NodeState.STOPPING}
ACTIVATABLE_STATES = {NodeState.STOPPED, NodeState.STARTING}


@dataclass
class FailoverBinding:
    mixer_id: str
    slot: SlotKey
    primary: str
    backups: List[str] = field(default_factory=list)
    active: Optional[str] = None
    armed: bool = True
    degraded: bool = False

    @property
    def key(self) -> BindingKey:
        return (self.mixer_id, self.slot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mixer": self.mixer_id,
            "slot": self.slot,
            "primary": self.primary,
            "backups": list(self.backups),
            "active": self.active,
            "armed": self.armed,
            "degraded": self.degraded,
        }


class FailoverController:
    def __init__(self, graph: GraphManager, events: Optional[EventHub] = None) -> None:
        self._graph = graph
        self._events = events or graph.events
        self._lock = threading.RLock()
        self._bindings: Dict[BindingKey, FailoverBinding] = {}
        self._pending: "queue.Queue[Optional[str]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._token = self._events.subscribe(self.handle_event)

    def close(self) -> None:
        self.stop()
        self._events.unsubscribe(self._token)

    # --------------------------------------------------------------- bindings

    def bind(self, mixer_id: str, slot: Any, primary: str, backups: Iterable[str]) -> FailoverBinding:
        backups = list(backups)
        mixer = self._graph.node(mixer_id)
        if mixer.kind != NodeKind.MIXER:
            raise InvalidConfig(f"Failover bindings require a mixer, '{mixer_id}' is a {mixer.kind.value}")
        slot_key = self._graph.resolve_slot(mixer_id, slot)
        for node_id in [primary, *backups]:
            self._graph.node(node_id)
        if primary in backups:
            raise InvalidConfig("The primary cannot also be a backup")
        if len(set(backups)) != len(backups):
            raise InvalidConfig("Backups must be unique")
        if mixer_id in backups:
            raise InvalidTopology(f"Mixer '{mixer_id}' cannot back up its own slot")

        binding = FailoverBinding(
            mixer_id=mixer_id, slot=slot_key, primary=primary, backups=backups, active=primary
        )
        with self._lock:
            self._bindings[binding.key] = binding
        LOG.info("Failover bound on %s[%s]: %s -> %s", mixer_id, slot_key, primary, ", ".join(backups) or "-")
        return binding

    def unbind(self, mixer_id: str, slot: Any) -> FailoverBinding:
        key = self._key(mixer_id, slot)
        with self._lock:
            binding = self._bindings.pop(key, None)
        if binding is None:
            raise InvalidConfig(f"No failover binding on {mixer_id}[{slot}]")
        if binding.degraded and self._graph.has_node(mixer_id):
            self._graph.clear_slot_degraded(mixer_id, binding.slot)
        LOG.info("Failover unbound on %s[%s]", mixer_id, binding.slot)
        return binding

    def rearm(self, mixer_id: str, slot: Any) -> FailoverBinding:
        """
        Make the primary the active feed again, clear the degraded flag and
        re-arm the binding.  Refused while the primary is still in ``error``.
        """

        key = self._key(mixer_id, slot)
        with self._lock:
            binding = self._bindings.get(key)
            if binding is None:
                raise InvalidConfig(f"No failover binding on {mixer_id}[{slot}]")
            if self._graph.node_state(binding.primary) == NodeState.ERROR:
                raise IllegalTransition(f"Primary '{binding.primary}' is still in error")

            feed = self._graph.feed_of(binding.mixer_id, binding.slot)
            if feed != binding.primary:
                if feed is None:
                    self._graph.connect(binding.primary, binding.mixer_id, binding.slot)
                else:
                    self._graph.reroute(binding.mixer_id, binding.slot, feed, binding.primary)
            if binding.degraded:
                self._graph.clear_slot_degraded(binding.mixer_id, binding.slot)
            binding.active = binding.primary
            binding.degraded = False
            binding.armed = True
        LOG.info("Failover re-armed on %s[%s]", mixer_id, binding.slot)
        return binding

    def forget_node(self, node_id: str) -> List[FailoverBinding]:
        """Drop bindings on a removed mixer and references to a removed feed."""

        dropped = []
        with self._lock:
            for key, binding in list(self._bindings.items()):
                if node_id in (binding.mixer_id, binding.primary):
                    dropped.append(self._bindings.pop(key))
                elif node_id in binding.backups:
                    binding.backups.remove(node_id)
                    if binding.active == node_id:
                        binding.active = None
        for binding in dropped:
            LOG.info("Failover binding on %s[%s] dropped with node %s", binding.mixer_id, binding.slot, node_id)
        return dropped

    def bindings(self) -> List[FailoverBinding]:
        with self._lock:
            return [
                FailoverBinding(
                    mixer_id=item.mixer_id,
                    slot=item.slot,
                    primary=item.primary,
                    backups=list(item.backups),
                    active=item.active,
                    armed=item.armed,
                    degraded=item.degraded,
                )
                for item in self._bindings.values()
            ]

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    # ----------------------------------------------------------------- events

    def handle_event(self, event: GraphEvent) -> None:
        if event.kind != EventKind.ERROR or event.node_id is None:
            return
        if event.detail.get("repeated"):
            return
        self._pending.put(event.node_id)

    def process_pending(self) -> int:
        """Run one controller cycle over every queued failure."""

        handled = 0
        while True:
            try:
                node_id = self._pending.get_nowait()
            except queue.Empty:
                return handled
            if node_id is None:
                continue
            self._on_failure(node_id)
            handled += 1

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="cuemix-failover", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._pending.put(None)
        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        while True:
            node_id = self._pending.get()
            if node_id is None:
                return
            try:
                self._on_failure(node_id)
            except Exception:  # pragma: no cover - keep the worker alive
                LOG.exception("Failover handling for node %s failed.", node_id)

    # ---------------------------------------------------------------- helpers

    def _on_failure(self, node_id: str) -> None:
        published: List[GraphEvent] = []
        with self._lock:
            for binding in list(self._bindings.values()):
                if binding.primary != node_id or binding.active != binding.primary or not binding.armed:
                    continue
                event = self._fail_over_locked(binding)
                if event is not None:
                    published.append(event)
        for event in published:
            self._events.publish(event)

    def _fail_over_locked(self, binding: FailoverBinding) -> Optional[GraphEvent]:
        try:
            if self._graph.feed_of(binding.mixer_id, binding.slot) != binding.primary:
                LOG.debug("Primary %s no longer feeds %s[%s]", binding.primary, binding.mixer_id, binding.slot)
                return None
        except UnknownNode:
            return None

        for candidate in self._candidates_locked(binding):
            try:
                if self._graph.node_state(candidate) == NodeState.STOPPED:
                    self._graph.request_state(candidate, NodeState.STARTING)
                self._graph.reroute(binding.mixer_id, binding.slot, binding.primary, candidate)
            except (UnknownNode, UnknownConnection, InvalidTopology, IllegalTransition, PipelineError) as exc:
                LOG.warning("Backup %s rejected for %s[%s]: %s", candidate, binding.mixer_id, binding.slot, exc)
                continue
            binding.active = candidate
            binding.armed = False
            LOG.warning(
                "Failover on %s[%s]: %s -> %s", binding.mixer_id, binding.slot, binding.primary, candidate
            )
            return GraphEvent(
                EventKind.FAILOVER,
                binding.mixer_id,
                None,
                {"slot": binding.slot, "from": binding.primary, "to": candidate},
            )

        try:
            self._graph.disconnect(binding.primary, binding.mixer_id, binding.slot)
        except (UnknownNode, UnknownConnection) as exc:
            LOG.debug("Primary %s already detached from %s[%s]: %s", binding.primary, binding.mixer_id, binding.slot, exc)
        binding.active = None
        binding.armed = False
        binding.degraded = True
        self._graph.mark_slot_degraded(binding.mixer_id, binding.slot)
        return GraphEvent(
            EventKind.DEGRADED,
            binding.mixer_id,
            None,
            {"slot": binding.slot, "primary": binding.primary},
        )

    def _candidates_locked(self, binding: FailoverBinding) -> List[str]:
        """
        Started backups first, otherwise the first backup that can still be
        activated.  Only one not-yet-started backup is ever tried.
        """

        taken = {
            other.active
            for other in self._bindings.values()
            if other is not binding and other.active is not None
        }
        started: List[str] = []
        activatable: List[str] = []
        for backup in binding.backups:
            if backup in taken:
                continue
            try:
                state = self._graph.node_state(backup)
            except UnknownNode:
                continue
            if state in UNUSABLE_STATES:
                continue
            if not self._graph.can_feed(backup, binding.mixer_id, binding.slot, replacing=binding.primary):
                continue
            if state == NodeState.STARTED:
                started.append(backup)
            elif state in ACTIVATABLE_STATES:
                activatable.append(backup)
        return started + activatable[:1]

    def _key(self, mixer_id: str, slot: Any) -> BindingKey:
        return (mixer_id, self._graph.resolve_slot(mixer_id, slot))
