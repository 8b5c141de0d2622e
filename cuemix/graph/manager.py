"""
Graph manager: the single authority over nodes and their connections.

Every structural operation runs atomically under one re-entrant lock.  Node
state requests and engine waits happen outside that lock, and events are
published only after it has been released.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from ..errors import (
    IllegalTransition,
    InvalidConfig,
    InvalidTopology,
    PipelineError,
    UnknownConnection,
    UnknownNode,
)
from ..events import EventHub, EventKind, GraphEvent, utcnow
from ..runtime.adapter import PipelineAdapter, PipelineEvent, SlotKey
from .controllers import ControlPoint, PropertyController
from .mixers import (
    CONTROLLABLE_SETTINGS,
    NUMERIC_SLOT_PROPERTIES,
    parse_slot_property,
    validate_setting,
    validate_slot_config,
    validate_slot_property,
)
from .node import CONFIG_TYPES, SETTLED, Node, NodeKind, NodeState, Transition, parse_kind

LOG = logging.getLogger(__name__)

ConnectionKey = Tuple[str, str, SlotKey]
ControllerKey = Tuple[str, SlotKey, str]

# Slot properties that hold fractional values.
FRACTIONAL_PROPERTIES = {"video::alpha", "audio::volume"}


@dataclass(frozen=True)
class Connection:
    src: str
    dst: str
    slot: SlotKey = None
    config: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> ConnectionKey:
        return (self.src, self.dst, self.slot)

    def to_dict(self) -> Dict[str, Any]:
        return {"src": self.src, "dst": self.dst, "slot": self.slot, "config": dict(self.config)}


@dataclass(frozen=True)
class GraphSnapshot:
    """Point-in-time copy of the graph, schedule and failover state."""

    nodes: List[Dict[str, Any]]
    connections: List[Dict[str, Any]]
    degraded_slots: List[Dict[str, Any]]
    taken_at: datetime
    schedule: List[Dict[str, Any]] = field(default_factory=list)
    failover: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": list(self.nodes),
            "connections": list(self.connections),
            "schedule": list(self.schedule),
            "failover": list(self.failover),
            "degraded_slots": list(self.degraded_slots),
            "taken_at": self.taken_at.isoformat(),
        }


def _slot_sort_key(slot: SlotKey) -> Tuple[int, str]:
    if slot is None:
        return (0, "")
    if isinstance(slot, int):
        return (1, f"{slot:08d}")
    return (2, str(slot))


class GraphManager:
    def __init__(
        self,
        adapter: PipelineAdapter,
        events: Optional[EventHub] = None,
        *,
        grace_period: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.adapter = adapter
        self.events = events or EventHub()
        self.grace_period = float(grace_period)
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.RLock()
        self._nodes: Dict[str, Node] = {}
        self._connections: Dict[ConnectionKey, Connection] = {}
        self._degraded: Set[Tuple[str, SlotKey]] = set()
        self._controllers: Dict[ControllerKey, PropertyController] = {}
        self._applied: Dict[ControllerKey, Any] = {}
        adapter.subscribe(self.handle_pipeline_event)

    # ------------------------------------------------------------------ nodes

    def add_node(
        self,
        kind: Union[str, NodeKind],
        config: Optional[Mapping[str, Any]] = None,
        node_id: Optional[str] = None,
    ) -> str:
        node_kind = parse_kind(kind)
        if config is not None and not isinstance(config, Mapping):
            raise InvalidConfig("Node config must be a mapping")
        parsed = CONFIG_TYPES[node_kind].from_mapping(config or {})
        if node_id is None:
            node_id = uuid.uuid4().hex
        elif not isinstance(node_id, str) or not node_id.strip():
            raise InvalidConfig("Node id must be a non-empty string")

        with self._lock:
            if node_id in self._nodes:
                raise InvalidConfig(f"Node '{node_id}' already exists")
            node = Node(
                node_id,
                node_kind,
                parsed,
                self.adapter,
                grace_period=self.grace_period,
                clock=self._clock,
                listener=self._on_transition,
            )
            self._nodes[node_id] = node
        LOG.info("Node %s added (%s)", node_id, node_kind.value)
        self.events.publish(
            GraphEvent(EventKind.NODE_ADDED, node_id, node.state.value, {"kind": node_kind.value})
        )
        return node_id

    def remove_node(self, node_id: str) -> None:
        """
        Stop ``node_id`` if needed, detach its connections and forget it.

        Waits for the engine outside the graph lock, bounded by the grace
        period; an unacknowledged stop forces the node to ``error``.
        """

        with self._lock:
            node = self._live(node_id)
            node.removing = True

        if node.state != NodeState.STOPPED:
            try:
                node.request_state(NodeState.STOPPING)
            except IllegalTransition:
                LOG.debug("Node %s already stopping before removal", node_id)
            if not node.wait_for(SETTLED, timeout=self.grace_period):
                node.force_error(f"PipelineTimeout: node '{node_id}' did not stop within {self.grace_period:g}s")

        with self._lock:
            detached = [conn for conn in self._connections.values() if node_id in (conn.src, conn.dst)]
            for conn in detached:
                self._unlink_locked(conn)
                del self._connections[conn.key]
            self._degraded = {item for item in self._degraded if item[0] != node_id}
            for key in [key for key in self._controllers if key[0] == node_id]:
                del self._controllers[key]
            for key in [key for key in self._applied if key[0] == node_id]:
                del self._applied[key]
            del self._nodes[node_id]

        try:
            self.adapter.release(node.handle)
        except PipelineError:
            LOG.warning("Failed to release element of node %s", node_id, exc_info=True)
        LOG.info("Node %s removed", node_id)
        for conn in detached:
            self._publish_connection(EventKind.DISCONNECTED, conn)
        self.events.publish(GraphEvent(EventKind.NODE_REMOVED, node_id, node.state.value))

    def request_state(self, node_id: str, target: Union[str, NodeState]) -> None:
        with self._lock:
            node = self._live(node_id)
        node.request_state(target)

    def node_state(self, node_id: str) -> NodeState:
        with self._lock:
            return self._get(node_id).state

    def node(self, node_id: str) -> Node:
        with self._lock:
            return self._get(node_id)

    def has_node(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._nodes

    def node_ids(self) -> List[str]:
        with self._lock:
            return list(self._nodes)

    def set_cue(self, node_id: str, cue_time: Optional[datetime], end_time: Optional[datetime]) -> None:
        with self._lock:
            node = self._get(node_id)
            node.cue_time = cue_time
            node.end_time = end_time

    # ------------------------------------------------------------ connections

    def connect(
        self,
        src: str,
        dst: str,
        slot: Any = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> Connection:
        with self._lock:
            src_node = self._live(src)
            dst_node = self._live(dst)
            slot_key = self._resolve_slot(dst_node, slot)
            slot_config = self._slot_config(dst_node, config)
            self._validate_edge_locked(src_node, dst_node, slot_key)
            occupant = self._occupant_locked(dst, slot_key)
            if occupant is not None:
                raise InvalidTopology(
                    f"Slot {slot_key!r} of '{dst}' is already fed by '{occupant.src}'"
                )
            self.adapter.link(src_node.handle, dst_node.handle, slot_key, slot_config)
            conn = Connection(src, dst, slot_key, slot_config)
            self._connections[conn.key] = conn
        LOG.info("Connected %s -> %s[%s]", src, dst, slot_key)
        self._publish_connection(EventKind.CONNECTED, conn)
        return conn

    def disconnect(self, src: str, dst: str, slot: Any = None) -> Connection:
        with self._lock:
            self._get(src)
            dst_node = self._get(dst)
            conn = self._connections.get((src, dst, self._normalise_slot(dst_node, slot)))
            if conn is None:
                raise UnknownConnection(f"No connection {src} -> {dst}[{slot}]")
            self._unlink_locked(conn)
            del self._connections[conn.key]
        LOG.info("Disconnected %s -> %s[%s]", src, dst, conn.slot)
        self._publish_connection(EventKind.DISCONNECTED, conn)
        return conn

    def reroute(self, dst: str, slot: Any, old_src: str, new_src: str) -> Connection:
        """Atomically replace the feed of ``dst[slot]``, keeping the slot config."""

        with self._lock:
            dst_node = self._live(dst)
            slot_key = self._resolve_slot(dst_node, slot)
            old = self._connections.get((old_src, dst, slot_key))
            if old is None:
                raise UnknownConnection(f"No connection {old_src} -> {dst}[{slot_key}]")
            new_node = self._live(new_src)
            self._validate_edge_locked(new_node, dst_node, slot_key)
            old_node = self._nodes[old_src]
            self.adapter.unlink(old_node.handle, dst_node.handle, slot_key)
            try:
                self.adapter.link(new_node.handle, dst_node.handle, slot_key, old.config)
            except PipelineError:
                LOG.warning("Reroute of %s[%s] to %s failed, restoring %s", dst, slot_key, new_src, old_src)
                self.adapter.link(old_node.handle, dst_node.handle, slot_key, old.config)
                raise
            del self._connections[old.key]
            conn = Connection(new_src, dst, slot_key, dict(old.config))
            self._connections[conn.key] = conn
        LOG.info("Rerouted %s[%s] from %s to %s", dst, slot_key, old_src, new_src)
        self._publish_connection(EventKind.DISCONNECTED, old)
        self._publish_connection(EventKind.CONNECTED, conn)
        return conn

    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def feed_of(self, dst: str, slot: Any) -> Optional[str]:
        """Return the node currently connected to ``dst[slot]``."""

        with self._lock:
            dst_node = self._get(dst)
            occupant = self._occupant_locked(dst, self._resolve_slot(dst_node, slot))
            return occupant.src if occupant else None

    def resolve_slot(self, dst: str, slot: Any) -> SlotKey:
        with self._lock:
            return self._resolve_slot(self._get(dst), slot)

    def can_feed(self, src: str, dst: str, slot: Any, *, replacing: Optional[str] = None) -> bool:
        """Whether ``src`` could feed ``dst[slot]`` once ``replacing`` is detached."""

        with self._lock:
            try:
                src_node = self._live(src)
                dst_node = self._live(dst)
                slot_key = self._resolve_slot(dst_node, slot)
                self._validate_edge_locked(src_node, dst_node, slot_key)
            except (UnknownNode, InvalidTopology):
                return False
            occupant = self._occupant_locked(dst, slot_key)
            return occupant is None or occupant.src == replacing

    # ---------------------------------------------------------------- slots

    def mark_slot_degraded(self, mixer_id: str, slot: Any) -> bool:
        with self._lock:
            key = (mixer_id, self._resolve_slot(self._get(mixer_id), slot))
            if key in self._degraded:
                return False
            self._degraded.add(key)
        LOG.warning("Slot %s[%s] degraded", mixer_id, key[1])
        return True

    def clear_slot_degraded(self, mixer_id: str, slot: Any) -> bool:
        with self._lock:
            key = (mixer_id, self._resolve_slot(self._get(mixer_id), slot))
            if key not in self._degraded:
                return False
            self._degraded.discard(key)
        return True

    def is_degraded(self, mixer_id: str, slot: Any) -> bool:
        with self._lock:
            return (mixer_id, self._resolve_slot(self._get(mixer_id), slot)) in self._degraded

    # --------------------------------------------------------- engine events

    def handle_pipeline_event(self, event: PipelineEvent) -> Optional[Transition]:
        with self._lock:
            node = self._nodes.get(event.handle.node_id)
        if node is None or node.handle.id != event.handle.id:
            LOG.debug("Dropping %s for unknown element %s", event.type.value, event.handle.id)
            return None
        return node.handle_pipeline_event(event)

    def expire_overdue(self, now: Optional[float] = None) -> List[Transition]:
        """Force nodes whose state request outlived the grace period to ``error``."""

        if now is None:
            now = self._clock()
        with self._lock:
            nodes = list(self._nodes.values())
        expired = []
        for node in nodes:
            transition = node.expire(now)
            if transition is not None:
                expired.append(transition)
        return expired

    # ------------------------------------------------------- control points

    def add_control_point(
        self,
        node_id: str,
        prop: str,
        point: ControlPoint,
        slot: Any = None,
    ) -> ControlPoint:
        with self._lock:
            node = self._live(node_id)
            if node.kind != NodeKind.MIXER:
                raise InvalidConfig(f"Node '{node_id}' has no controllable properties")
            slot_key = None if slot is None else self._resolve_slot(node, slot)
            key: ControllerKey = (node_id, slot_key, prop)
            controller = self._controllers.get(key)
            if controller is None:
                controller = self._new_controller_locked(node, slot_key, prop)
            stored = controller.add(point)
            self._controllers[key] = controller
        LOG.info("Control point %s added on %s %s", stored.id, node_id, prop)
        return stored

    def remove_control_point(self, node_id: str, point_id: str) -> None:
        with self._lock:
            self._get(node_id)
            removed = False
            for key in [key for key in self._controllers if key[0] == node_id]:
                controller = self._controllers[key]
                if controller.remove(point_id):
                    removed = True
                if not controller:
                    del self._controllers[key]
            if not removed:
                raise InvalidConfig(f"No control point '{point_id}' on node '{node_id}'")

    def synchronize_controllers(self, now: Optional[datetime] = None) -> int:
        """Apply due control point values; returns the number of properties set."""

        if now is None:
            now = self._wall_clock()
        updates = []
        with self._lock:
            for key, controller in list(self._controllers.items()):
                node = self._nodes.get(key[0])
                if node is None:
                    continue
                changed, value = controller.synchronize(now)
                if changed:
                    self._applied[key] = value
                    updates.append((node, key, value))
                if not controller:
                    del self._controllers[key]
        for node, (_, slot, prop), value in updates:
            try:
                self.adapter.set_property(node.handle, prop, value, slot=slot)
            except PipelineError:
                LOG.warning("Failed to apply %s=%r on %s", prop, value, node.id, exc_info=True)
        return len(updates)

    # -------------------------------------------------------------- snapshot

    def snapshot(self) -> GraphSnapshot:
        with self._lock:
            points: Dict[str, List[Dict[str, Any]]] = {}
            for (node_id, slot, prop), controller in self._controllers.items():
                points.setdefault(node_id, []).append(
                    {"property": prop, "slot": slot, "points": [item.to_dict() for item in controller.points]}
                )
            nodes = []
            for node_id in sorted(self._nodes):
                info = self._nodes[node_id].describe()
                info["control_points"] = points.get(node_id, [])
                nodes.append(info)
            connections = [
                conn.to_dict()
                for conn in sorted(
                    self._connections.values(),
                    key=lambda item: (item.dst, _slot_sort_key(item.slot), item.src),
                )
            ]
            degraded = [
                {"mixer": mixer, "slot": slot}
                for mixer, slot in sorted(self._degraded, key=lambda item: (item[0], _slot_sort_key(item[1])))
            ]
        return GraphSnapshot(nodes=nodes, connections=connections, degraded_slots=degraded, taken_at=self._wall_clock())

    # ---------------------------------------------------------------- helpers

    def _get(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNode(node_id)
        return node

    def _live(self, node_id: str) -> Node:
        node = self._get(node_id)
        if node.removing:
            raise UnknownNode(node_id)
        return node

    def _resolve_slot(self, node: Node, slot: Any) -> SlotKey:
        if node.kind == NodeKind.DESTINATION:
            if slot in (None, 0, "0"):
                return None
            raise InvalidTopology(f"Destination '{node.id}' has a single input slot")
        if node.kind == NodeKind.MIXER:
            return node.config.resolve_slot(slot)
        raise InvalidTopology(f"Source '{node.id}' has no input slots")

    def _normalise_slot(self, node: Node, slot: Any) -> SlotKey:
        try:
            return self._resolve_slot(node, slot)
        except InvalidTopology:
            raise UnknownConnection(f"Node '{node.id}' has no slot {slot!r}") from None

    def _slot_config(self, dst_node: Node, config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not config:
            return {}
        if dst_node.kind != NodeKind.MIXER:
            raise InvalidConfig("Slot config is only valid on mixer slots")
        return validate_slot_config(config)

    def _occupant_locked(self, dst: str, slot: SlotKey) -> Optional[Connection]:
        for conn in self._connections.values():
            if conn.dst == dst and conn.slot == slot:
                return conn
        return None

    def _validate_edge_locked(self, src_node: Node, dst_node: Node, slot: SlotKey) -> None:
        """Direction, fan-out and cycle checks; slot occupancy is checked by callers."""

        if src_node.id == dst_node.id:
            raise InvalidTopology(f"Node '{src_node.id}' cannot feed itself")
        if src_node.kind == NodeKind.DESTINATION:
            raise InvalidTopology(f"Destination '{src_node.id}' has no outputs")
        if dst_node.kind == NodeKind.SOURCE:
            raise InvalidTopology(f"Source '{dst_node.id}' has no inputs")
        if src_node.kind == NodeKind.MIXER:
            for conn in self._connections.values():
                if conn.src == src_node.id:
                    raise InvalidTopology(f"Mixer '{src_node.id}' already feeds '{conn.dst}'")
        if self._reaches_locked(dst_node.id, src_node.id):
            raise InvalidTopology(f"Connecting '{src_node.id}' to '{dst_node.id}' would create a cycle")

    def _reaches_locked(self, start: str, target: str) -> bool:
        pending = [start]
        seen: Set[str] = set()
        while pending:
            current = pending.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            pending.extend(conn.dst for conn in self._connections.values() if conn.src == current)
        return False

    def _new_controller_locked(self, node: Node, slot: SlotKey, prop: str) -> PropertyController:
        key = (node.id, slot, prop)
        if slot is None:
            if prop not in CONTROLLABLE_SETTINGS:
                raise InvalidConfig(f"Mixer setting '{prop}' is not controllable")
            return PropertyController(
                prop,
                integral=True,
                initial=self._applied.get(key, getattr(node.config, prop)),
                validate=validate_setting,
            )
        parse_slot_property(prop)
        occupant = self._occupant_locked(node.id, slot)
        return PropertyController(
            prop,
            slot=slot,
            numeric=prop in NUMERIC_SLOT_PROPERTIES,
            integral=prop not in FRACTIONAL_PROPERTIES,
            initial=self._applied.get(key, occupant.config.get(prop) if occupant else None),
            validate=validate_slot_property,
        )

    def _unlink_locked(self, conn: Connection) -> None:
        try:
            self.adapter.unlink(self._nodes[conn.src].handle, self._nodes[conn.dst].handle, conn.slot)
        except PipelineError:
            LOG.warning("Failed to unlink %s -> %s[%s]", conn.src, conn.dst, conn.slot, exc_info=True)

    def _on_transition(self, transition: Transition) -> None:
        detail: Dict[str, Any] = {"previous": transition.previous.value}
        if transition.reason:
            detail["reason"] = transition.reason
        if transition.state == NodeState.ERROR:
            kind = EventKind.ERROR
            detail["repeated"] = transition.repeated
        else:
            kind = EventKind.STATE_CHANGED
        self.events.publish(GraphEvent(kind, transition.node_id, transition.state.value, detail))

    def _publish_connection(self, kind: EventKind, conn: Connection) -> None:
        self.events.publish(
            GraphEvent(kind, conn.dst, None, {"src": conn.src, "dst": conn.dst, "slot": conn.slot})
        )
