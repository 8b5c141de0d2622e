"""
Outward notification channel.

The graph, scheduler and failover controller publish :class:`GraphEvent`
instances on an :class:`EventHub`; the failover controller and WebSocket
clients subscribe to it.  Publishing never happens while a graph or node
lock is held.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

LOG = logging.getLogger(__name__)


class EventKind(str, Enum):
    NODE_ADDED = "node-added"
    NODE_REMOVED = "node-removed"
    STATE_CHANGED = "state-changed"
    ERROR = "error"
    FAILOVER = "failover"
    DEGRADED = "degraded"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GraphEvent:
    kind: EventKind
    node_id: Optional[str] = None
    state: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "node_id": self.node_id,
            "state": self.state,
            "timestamp": self.timestamp.isoformat(),
            "detail": dict(self.detail),
        }


EventCallback = Callable[[GraphEvent], None]


class EventHub:
    """Thread-safe fan-out of graph events to registered callbacks."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counter = 0
        self._subscribers: Dict[int, EventCallback] = {}

    def subscribe(self, callback: EventCallback) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._lock:
            self._counter += 1
            token = self._counter
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, event: GraphEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.items())
        LOG.debug("Event %s node=%s state=%s", event.kind.value, event.node_id, event.state)
        for token, callback in subscribers:
            try:
                callback(event)
            except Exception:  # pragma: no cover - subscriber failures should not kill the graph
                LOG.exception("Event subscriber %s failed.", token)
