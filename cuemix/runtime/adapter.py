"""
Pipeline adapter boundary.

Nodes never talk to the media engine directly; they go through a
:class:`PipelineAdapter` which exposes per-element create/state/link
operations and an inbound event stream.  State changes are fire-and-forget:
completion or failure is reported later as a :class:`PipelineEvent`.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from ..errors import PipelineError

LOG = logging.getLogger(__name__)

SlotKey = Optional[Union[int, str]]


class ElementState(str, Enum):
    """Engine-level target states."""

    NULL = "null"
    PLAYING = "playing"


class PipelineEventType(str, Enum):
    STATE_REACHED = "state-reached"
    ERROR = "error"
    END_OF_STREAM = "end-of-stream"


@dataclass(frozen=True)
class ElementHandle:
    """Opaque reference to an engine element owned by exactly one node."""

    id: str
    node_id: str
    kind: str


@dataclass(frozen=True)
class PipelineEvent:
    handle: ElementHandle
    type: PipelineEventType
    state: Optional[ElementState] = None
    reason: Optional[str] = None


EventCallback = Callable[[PipelineEvent], None]


class PipelineAdapter:
    """
    Base class for execution adapters.

    Subclasses implement the element operations; the base class owns the
    subscriber list and event fan-out.
    """

    def __init__(self) -> None:
        self._observer_lock = threading.RLock()
        self._observer_counter = 0
        self._observers: Dict[int, EventCallback] = {}

    # ------------------------------------------------------------------ events

    def subscribe(self, callback: EventCallback) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._observer_lock:
            self._observer_counter += 1
            token = self._observer_counter
            self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        with self._observer_lock:
            self._observers.pop(token, None)

    def _emit(self, event: PipelineEvent) -> None:
        with self._observer_lock:
            observers = list(self._observers.items())
        for token, callback in observers:
            try:
                callback(event)
            except Exception:  # pragma: no cover - observer failures should not kill the adapter
                LOG.exception("Pipeline event observer %s failed.", token)

    # --------------------------------------------------------------- lifecycle

    def start(self) -> None:
        """Acquire engine-wide resources."""

    def stop(self) -> None:
        """Release engine-wide resources."""

    # ---------------------------------------------------------------- elements

    def create_element(self, node_id: str, kind: str, params: Mapping[str, Any]) -> ElementHandle:
        raise NotImplementedError

    def set_state(self, handle: ElementHandle, target: ElementState) -> None:
        raise NotImplementedError

    def link(
        self,
        upstream: ElementHandle,
        downstream: ElementHandle,
        slot: SlotKey,
        config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        raise NotImplementedError

    def unlink(self, upstream: ElementHandle, downstream: ElementHandle, slot: SlotKey) -> None:
        raise NotImplementedError

    def set_property(
        self,
        handle: ElementHandle,
        name: str,
        value: Any,
        *,
        slot: SlotKey = None,
    ) -> None:
        raise NotImplementedError

    def release(self, handle: ElementHandle) -> None:
        raise NotImplementedError


@dataclass
class DryRunElement:
    handle: ElementHandle
    params: Dict[str, Any]
    state: ElementState = ElementState.NULL
    requested: Optional[ElementState] = None
    properties: Dict[Tuple[SlotKey, str], Any] = field(default_factory=dict)
    released: bool = False


class DryRunPipelineAdapter(PipelineAdapter):
    """
    Adapter that performs no media work.

    With ``auto_ack`` enabled every state request is acknowledged immediately,
    which is handy for rehearsing a show without hardware.  With ``auto_ack``
    disabled the caller drives the engine side explicitly through
    :meth:`complete`, :meth:`fail` and :meth:`end_of_stream`.
    """

    def __init__(self, *, auto_ack: bool = True) -> None:
        super().__init__()
        self.auto_ack = auto_ack
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.elements: Dict[str, DryRunElement] = {}
        self.links: Set[Tuple[str, str, SlotKey]] = set()
        self.history: List[Tuple[str, ElementState]] = []

    def create_element(self, node_id: str, kind: str, params: Mapping[str, Any]) -> ElementHandle:
        with self._lock:
            handle = ElementHandle(id=f"{kind}-{node_id}-{next(self._ids)}", node_id=node_id, kind=str(kind))
            self.elements[handle.id] = DryRunElement(handle=handle, params=dict(params))
        LOG.debug("Dry-run element created: %s", handle.id)
        return handle

    def set_state(self, handle: ElementHandle, target: ElementState) -> None:
        with self._lock:
            element = self._element(handle)
            element.requested = target
            self.history.append((handle.node_id, target))
        if self.auto_ack:
            self.complete(handle)

    def link(
        self,
        upstream: ElementHandle,
        downstream: ElementHandle,
        slot: SlotKey,
        config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._element(upstream)
            element = self._element(downstream)
            self.links.add((upstream.id, downstream.id, slot))
            for key, value in (config or {}).items():
                element.properties[(slot, key)] = value

    def unlink(self, upstream: ElementHandle, downstream: ElementHandle, slot: SlotKey) -> None:
        with self._lock:
            self.links.discard((upstream.id, downstream.id, slot))

    def set_property(
        self,
        handle: ElementHandle,
        name: str,
        value: Any,
        *,
        slot: SlotKey = None,
    ) -> None:
        with self._lock:
            self._element(handle).properties[(slot, name)] = value

    def release(self, handle: ElementHandle) -> None:
        with self._lock:
            element = self.elements.get(handle.id)
            if element is None:
                return
            element.released = True
            self.links = {link for link in self.links if handle.id not in link[:2]}

    # ------------------------------------------------------------ engine side

    def complete(self, handle: ElementHandle, state: Optional[ElementState] = None) -> None:
        """Acknowledge the pending state request of ``handle``."""

        with self._lock:
            element = self._element(handle)
            reached = state or element.requested
            if reached is None:
                return
            element.state = reached
            element.requested = None
        self._emit(PipelineEvent(handle=handle, type=PipelineEventType.STATE_REACHED, state=reached))

    def fail(self, handle: ElementHandle, reason: str = "simulated failure") -> None:
        with self._lock:
            self._element(handle).requested = None
        self._emit(PipelineEvent(handle=handle, type=PipelineEventType.ERROR, reason=reason))

    def end_of_stream(self, handle: ElementHandle) -> None:
        self._emit(PipelineEvent(handle=handle, type=PipelineEventType.END_OF_STREAM))

    def pending(self, handle: ElementHandle) -> Optional[ElementState]:
        with self._lock:
            return self._element(handle).requested

    def _element(self, handle: ElementHandle) -> DryRunElement:
        element = self.elements.get(handle.id)
        if element is None or element.released:
            raise PipelineError(f"Element '{handle.id}' does not exist")
        return element
