"""
Node lifecycle.

A :class:`Node` owns exactly one engine element and drives it through the
``stopped -> starting -> started -> stopping -> stopped`` cycle.  State
requests are fire-and-forget: the node records the intermediate state, asks
the adapter for the engine target and learns about the outcome later through
:meth:`Node.handle_pipeline_event`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

from ..errors import IllegalTransition, InvalidConfig, PipelineError
from ..runtime.adapter import (
    ElementHandle,
    ElementState,
    PipelineAdapter,
    PipelineEvent,
    PipelineEventType,
)
from .mixers import MixerConfig
from .outputs import DestinationConfig
from .sources import SourceConfig

LOG = logging.getLogger(__name__)


class NodeKind(str, Enum):
    SOURCE = "source"
    MIXER = "mixer"
    DESTINATION = "destination"


class NodeState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    ERROR = "error"


ACTIVATE_TARGETS = {NodeState.STARTING, NodeState.STARTED}
DEACTIVATE_TARGETS = {NodeState.STOPPING, NodeState.STOPPED}
DEACTIVATABLE = {NodeState.STARTING, NodeState.STARTED, NodeState.ERROR}
IN_FLIGHT = {NodeState.STARTING, NodeState.STOPPING}
SETTLED = {NodeState.STOPPED, NodeState.ERROR}

NodeConfig = Union[SourceConfig, MixerConfig, DestinationConfig]

CONFIG_TYPES = {
    NodeKind.SOURCE: SourceConfig,
    NodeKind.MIXER: MixerConfig,
    NodeKind.DESTINATION: DestinationConfig,
}


def parse_kind(kind: Union[str, NodeKind]) -> NodeKind:
    try:
        return NodeKind(kind)
    except ValueError:
        choices = ", ".join(item.value for item in NodeKind)
        raise InvalidConfig(f"Node kind must be one of {choices}, got '{kind}'") from None


def parse_state(target: Union[str, NodeState]) -> NodeState:
    try:
        return NodeState(target)
    except ValueError:
        raise IllegalTransition(f"Unknown node state '{target}'") from None


@dataclass(frozen=True)
class Transition:
    """A state change (or a repeated error) observed on a node."""

    node_id: str
    previous: NodeState
    state: NodeState
    reason: Optional[str] = None

    @property
    def repeated(self) -> bool:
        return self.previous == self.state


TransitionListener = Callable[[Transition], None]


class Node:
    def __init__(
        self,
        node_id: str,
        kind: NodeKind,
        config: NodeConfig,
        adapter: PipelineAdapter,
        *,
        grace_period: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        listener: Optional[TransitionListener] = None,
    ) -> None:
        self.id = node_id
        self.kind = kind
        self.config = config
        self._adapter = adapter
        self._grace_period = float(grace_period)
        self._clock = clock
        self._listener = listener
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        # Serialises "change state + issue engine target" so targets reach
        # the engine in request order.
        self._request_lock = threading.RLock()
        self._state = NodeState.STOPPED
        self._deadline: Optional[float] = None
        self.last_error: Optional[str] = None
        self.cue_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.removing = False
        self.handle: ElementHandle = adapter.create_element(node_id, kind.value, config.to_params())

    def __repr__(self) -> str:
        return f"<Node {self.id} kind={self.kind.value} state={self.state.value}>"

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> NodeState:
        with self._lock:
            return self._state

    @property
    def deadline(self) -> Optional[float]:
        with self._lock:
            return self._deadline

    def wait_for(self, states: Iterable[NodeState], timeout: Optional[float] = None) -> bool:
        """Block until the node reaches one of ``states``; ``False`` on timeout."""

        wanted = {NodeState(item) for item in states}
        with self._changed:
            return self._changed.wait_for(lambda: self._state in wanted, timeout=timeout)

    def request_state(self, target: Union[str, NodeState]) -> None:
        """
        Ask the node to activate (``starting``/``started``) or deactivate
        (``stopping``/``stopped``).

        Returns once the engine request is issued.  Raises
        :class:`IllegalTransition` without changing state when the request is
        not legal from the current state.
        """

        target = parse_state(target)
        with self._request_lock:
            with self._lock:
                current = self._state
                if target in ACTIVATE_TARGETS and current == NodeState.STOPPED:
                    transition = self._transition_locked(NodeState.STARTING)
                    engine_target = ElementState.PLAYING
                elif target in DEACTIVATE_TARGETS and current in DEACTIVATABLE:
                    transition = self._transition_locked(NodeState.STOPPING)
                    engine_target = ElementState.NULL
                else:
                    LOG.warning("Node %s: illegal transition %s -> %s", self.id, current.value, target.value)
                    raise IllegalTransition(
                        f"Node '{self.id}' cannot go to {target.value} from {current.value}"
                    )
            self._notify(transition)
            self._issue(engine_target)

    def force_error(self, reason: str) -> Optional[Transition]:
        """Move a node that is not yet in ``error`` to ``error``."""

        with self._lock:
            if self._state == NodeState.ERROR:
                return None
            self.last_error = reason
            transition = self._transition_locked(NodeState.ERROR, reason)
        LOG.error("Node %s forced to error: %s", self.id, reason)
        self._notify(transition)
        return transition

    def expire(self, now: float) -> Optional[Transition]:
        """Force ``error`` when an in-flight request outlived the grace period."""

        with self._lock:
            if self._state not in IN_FLIGHT or self._deadline is None or now < self._deadline:
                return None
            reason = f"PipelineTimeout: {self._state.value} not acknowledged within {self._grace_period:g}s"
            self.last_error = reason
            transition = self._transition_locked(NodeState.ERROR, reason)
        LOG.error("Node %s timed out: %s", self.id, reason)
        self._notify(transition)
        return transition

    # ----------------------------------------------------------- engine events

    def handle_pipeline_event(self, event: PipelineEvent) -> Optional[Transition]:
        deactivate = False
        with self._lock:
            current = self._state
            transition: Optional[Transition] = None
            if event.type == PipelineEventType.STATE_REACHED:
                if event.state == ElementState.PLAYING and current == NodeState.STARTING:
                    transition = self._transition_locked(NodeState.STARTED)
                elif event.state == ElementState.NULL and current == NodeState.STOPPING:
                    transition = self._transition_locked(NodeState.STOPPED)
            elif event.type == PipelineEventType.ERROR:
                reason = event.reason or "pipeline error"
                if current == NodeState.ERROR:
                    self.last_error = reason
                    transition = Transition(self.id, current, current, reason)
                elif current != NodeState.STOPPED:
                    self.last_error = reason
                    transition = self._transition_locked(NodeState.ERROR, reason)
            elif event.type == PipelineEventType.END_OF_STREAM:
                if current in (NodeState.STARTING, NodeState.STARTED):
                    if getattr(self.config, "expect_eos", False):
                        deactivate = True
                    else:
                        self.last_error = "unexpected end-of-stream"
                        transition = self._transition_locked(NodeState.ERROR, self.last_error)

        if deactivate:
            LOG.info("Node %s reached its expected end-of-stream", self.id)
            try:
                self.request_state(NodeState.STOPPING)
            except IllegalTransition:
                LOG.debug("Node %s changed state before end-of-stream shutdown", self.id)
            return None
        if transition is None:
            LOG.debug(
                "Node %s ignoring stale %s (state=%s) while %s",
                self.id,
                event.type.value,
                event.state.value if event.state else None,
                current.value,
            )
            return None
        if transition.state == NodeState.ERROR:
            LOG.error("Node %s error: %s", self.id, transition.reason)
        self._notify(transition)
        return transition

    # ----------------------------------------------------------------- helpers

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "kind": self.kind.value,
                "state": self._state.value,
                "config": self.config.to_params(),
                "cue_time": self.cue_time.isoformat() if self.cue_time else None,
                "end_time": self.end_time.isoformat() if self.end_time else None,
                "last_error": self.last_error,
            }

    def _transition_locked(self, state: NodeState, reason: Optional[str] = None) -> Transition:
        previous = self._state
        self._state = state
        self._deadline = self._clock() + self._grace_period if state in IN_FLIGHT else None
        self._changed.notify_all()
        return Transition(self.id, previous, state, reason)

    def _issue(self, target: ElementState) -> None:
        try:
            self._adapter.set_state(self.handle, target)
        except PipelineError as exc:
            self.force_error(f"set_state({target.value}) failed: {exc}")

    def _notify(self, transition: Transition) -> None:
        if self._listener is None:
            return
        try:
            self._listener(transition)
        except Exception:  # pragma: no cover - listener failures should not kill the node
            LOG.exception("Transition listener for node %s failed.", self.id)
