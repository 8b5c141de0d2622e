"""
Command level facade over the graph, scheduler and failover controller.

Client commands are serialised by a single command lock.  ``inspect`` does
not take that lock so that snapshots never wait behind a slow node removal.
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from . import EngineConfig
from .errors import GraphError, InvalidConfig
from .events import EventHub, utcnow
from .failover import FailoverController
from .graph.controllers import ControlMode, ControlPoint
from .graph.manager import GraphManager, GraphSnapshot
from .graph.node import NodeKind, NodeState
from .runtime.adapter import PipelineAdapter
from .scheduler import Duration, Scheduler, as_utc

LOG = logging.getLogger(__name__)

COMMANDS = (
    "create_node",
    "connect",
    "disconnect",
    "schedule",
    "unschedule",
    "remove_node",
    "request_state",
    "bind_failover",
    "unbind_failover",
    "rearm",
    "add_control_point",
    "remove_control_point",
    "inspect",
)


class Orchestrator:
    def __init__(
        self,
        adapter: PipelineAdapter,
        *,
        config: Optional[EngineConfig] = None,
        events: Optional[EventHub] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self.adapter = adapter
        self.events = events or EventHub()
        self.graph = GraphManager(
            adapter,
            self.events,
            grace_period=self.config.grace_period,
            clock=monotonic,
            wall_clock=clock,
        )
        self.scheduler = Scheduler(self.graph, tick_interval=self.config.tick_interval, clock=clock)
        self.failover = FailoverController(self.graph, self.events)
        self.scheduler.add_tick_hook(self.graph.expire_overdue)
        self.scheduler.add_tick_hook(self.graph.synchronize_controllers)
        self._lock = threading.RLock()

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        self.adapter.start()
        self.failover.start()
        self.scheduler.start()
        LOG.info("Orchestrator started (profile=%s)", self.config.profile)

    def stop(self) -> None:
        self.scheduler.stop()
        self.failover.stop()
        self.adapter.stop()
        LOG.info("Orchestrator stopped")

    # ---------------------------------------------------------------- commands

    def create_node(
        self,
        kind: Union[str, NodeKind],
        config: Optional[Mapping[str, Any]] = None,
        id: Optional[str] = None,
    ) -> str:
        with self._command("create_node"):
            return self.graph.add_node(kind, config, node_id=id)

    def connect(
        self,
        src: str,
        dst: str,
        slot: Any = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self._command("connect"):
            return self.graph.connect(src, dst, slot, config).to_dict()

    def disconnect(self, src: str, dst: str, slot: Any = None) -> Dict[str, Any]:
        with self._command("disconnect"):
            return self.graph.disconnect(src, dst, slot).to_dict()

    def schedule(
        self,
        node: str,
        cue_time: Optional[datetime] = None,
        duration: Optional[Duration] = None,
    ) -> List[Dict[str, Any]]:
        with self._command("schedule"):
            return [entry.to_dict() for entry in self.scheduler.schedule(node, cue_time, duration)]

    def unschedule(self, node: str) -> int:
        with self._command("unschedule"):
            return self.scheduler.unschedule(node)

    def remove_node(self, node: str) -> None:
        with self._command("remove_node"):
            self.graph.node(node)
            self.scheduler.unschedule(node)
            self.failover.forget_node(node)
            self.graph.remove_node(node)

    def request_state(self, node: str, target: Union[str, NodeState]) -> str:
        with self._command("request_state"):
            self.graph.request_state(node, target)
            return self.graph.node_state(node).value

    def bind_failover(self, mixer: str, slot: Any, primary: str, backups: Iterable[str] = ()) -> Dict[str, Any]:
        with self._command("bind_failover"):
            return self.failover.bind(mixer, slot, primary, backups).to_dict()

    def unbind_failover(self, mixer: str, slot: Any) -> Dict[str, Any]:
        with self._command("unbind_failover"):
            return self.failover.unbind(mixer, slot).to_dict()

    def rearm(self, mixer: str, slot: Any) -> Dict[str, Any]:
        with self._command("rearm"):
            return self.failover.rearm(mixer, slot).to_dict()

    def add_control_point(
        self,
        node: str,
        property: str,
        id: str,
        time: datetime,
        value: Any,
        mode: Union[str, ControlMode] = ControlMode.SET,
        slot: Any = None,
    ) -> Dict[str, Any]:
        with self._command("add_control_point"):
            try:
                control_mode = ControlMode(mode)
            except ValueError:
                raise InvalidConfig(f"Control point mode must be 'set' or 'interpolate', got '{mode}'") from None
            point = ControlPoint(id=id, time=as_utc(time), value=value, mode=control_mode)
            return self.graph.add_control_point(node, property, point, slot=slot).to_dict()

    def remove_control_point(self, node: str, id: str) -> None:
        with self._command("remove_control_point"):
            self.graph.remove_control_point(node, id)

    def inspect(self) -> GraphSnapshot:
        # Lock order: scheduler, failover, graph.
        with self.scheduler.locked(), self.failover.locked():
            schedule = [entry.to_dict() for entry in self.scheduler.entries()]
            failover = [binding.to_dict() for binding in self.failover.bindings()]
            snapshot = self.graph.snapshot()
        return replace(snapshot, schedule=schedule, failover=failover)

    def dispatch(self, command: Mapping[str, Any]) -> Any:
        """Run a ``{"type": <command>, ...}`` mapping against the matching method."""

        payload = dict(command)
        name = payload.pop("type", None)
        if name not in COMMANDS:
            raise InvalidConfig(f"Unknown command '{name}'")
        handler = getattr(self, name)
        try:
            inspect.signature(handler).bind(**payload)
        except TypeError as exc:
            raise InvalidConfig(f"Invalid arguments for '{name}': {exc}") from None
        result = handler(**payload)
        if isinstance(result, GraphSnapshot):
            return result.to_dict()
        return result

    # ----------------------------------------------------------------- helpers

    @contextmanager
    def _command(self, name: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except GraphError as exc:
                LOG.warning("Command %s rejected: %s (%s)", name, exc, exc.code)
                raise
