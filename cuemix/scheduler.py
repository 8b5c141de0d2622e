"""
Cue-time scheduler.

Entries live in a ``heapq`` keyed by ``(due, seq)`` so that entries due at
the same instant fire in the order they were scheduled.  A daemon timer
thread calls :meth:`Scheduler.tick` every ``tick_interval`` seconds; tests
call it directly with an explicit ``now``.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Union

from .errors import IllegalTransition, InvalidConfig, UnknownNode
from .events import utcnow
from .graph.manager import GraphManager
from .graph.node import NodeState

LOG = logging.getLogger(__name__)

Duration = Union[timedelta, float, int]


class ScheduleAction(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"


ACTION_TARGETS = {
    ScheduleAction.ACTIVATE: NodeState.STARTING,
    ScheduleAction.DEACTIVATE: NodeState.STOPPING,
}


@dataclass(frozen=True, order=True)
class ScheduleEntry:
    due: datetime
    seq: int
    node_id: str = field(compare=False)
    action: ScheduleAction = field(compare=False)

    def to_dict(self) -> Dict[str, object]:
        return {
            "node_id": self.node_id,
            "due": self.due.isoformat(),
            "action": self.action.value,
            "seq": self.seq,
        }


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if not isinstance(value, datetime):
        raise InvalidConfig("cue_time must be a datetime")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_duration(value: Optional[Duration]) -> Optional[timedelta]:
    if value is None:
        return None
    if isinstance(value, timedelta):
        duration = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        duration = timedelta(seconds=value)
    else:
        raise InvalidConfig("duration must be a number of seconds or a timedelta")
    if duration < timedelta(0):
        raise InvalidConfig("duration must not be negative")
    return duration


class Scheduler:
    def __init__(
        self,
        graph: GraphManager,
        *,
        tick_interval: float = 0.1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._graph = graph
        self._tick_interval = float(tick_interval)
        self._clock = clock
        self._lock = threading.RLock()
        self._queue: List[ScheduleEntry] = []
        self._seq = itertools.count()
        self._hooks: List[Callable[[], None]] = []
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ----------------------------------------------------------------- queue

    def schedule(
        self,
        node_id: str,
        cue_time: Optional[datetime] = None,
        duration: Optional[Duration] = None,
    ) -> List[ScheduleEntry]:
        """
        Replace the pending entries of ``node_id`` with an activation at
        ``cue_time`` (default: now) and, when ``duration`` is given, a
        deactivation at ``cue_time + duration``.
        """

        cue = as_utc(cue_time) if cue_time is not None else self._clock()
        length = as_duration(duration)
        end = cue + length if length is not None else None
        with self._lock:
            # Validates the node before the queue is touched.
            self._graph.set_cue(node_id, cue, end)
            self._drop_locked(node_id)
            entries = [self._push_locked(node_id, cue, ScheduleAction.ACTIVATE)]
            if end is not None:
                entries.append(self._push_locked(node_id, end, ScheduleAction.DEACTIVATE))
        LOG.info("Node %s scheduled at %s%s", node_id, cue.isoformat(), f" until {end.isoformat()}" if end else "")
        return entries

    def unschedule(self, node_id: str) -> int:
        with self._lock:
            removed = self._drop_locked(node_id)
            if self._graph.has_node(node_id):
                self._graph.set_cue(node_id, None, None)
        if removed:
            LOG.info("Node %s unscheduled (%d entries)", node_id, removed)
        return removed

    def entries(self) -> List[ScheduleEntry]:
        with self._lock:
            return sorted(self._queue)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the queue still while a caller takes a combined snapshot."""

        with self._lock:
            yield

    def tick(self, now: Optional[datetime] = None) -> List[ScheduleEntry]:
        """Fire every entry due at ``now``; returns the entries fired."""

        now = as_utc(now) if now is not None else self._clock()
        fired: List[ScheduleEntry] = []
        with self._lock:
            while self._queue and self._queue[0].due <= now:
                entry = heapq.heappop(self._queue)
                fired.append(entry)
                self._dispatch(entry)
        return fired

    # ---------------------------------------------------------------- thread

    def add_tick_hook(self, hook: Callable[[], None]) -> None:
        self._hooks.append(hook)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cuemix-scheduler", daemon=True)
        self._thread.start()
        LOG.info("Scheduler started (tick %.3fs)", self._tick_interval)

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self._tick_interval * 5))
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._tick_interval):
            try:
                self.tick()
            except Exception:  # pragma: no cover - keep the timer alive
                LOG.exception("Scheduler tick failed.")
            for hook in list(self._hooks):
                try:
                    hook()
                except Exception:  # pragma: no cover - keep the timer alive
                    LOG.exception("Scheduler tick hook %r failed.", hook)

    # --------------------------------------------------------------- helpers

    def _push_locked(self, node_id: str, due: datetime, action: ScheduleAction) -> ScheduleEntry:
        entry = ScheduleEntry(due=due, seq=next(self._seq), node_id=node_id, action=action)
        heapq.heappush(self._queue, entry)
        return entry

    def _drop_locked(self, node_id: str) -> int:
        remaining = [entry for entry in self._queue if entry.node_id != node_id]
        removed = len(self._queue) - len(remaining)
        if removed:
            heapq.heapify(remaining)
            self._queue = remaining
        return removed

    def _dispatch(self, entry: ScheduleEntry) -> None:
        LOG.info("Cue: %s %s", entry.action.value, entry.node_id)
        try:
            self._graph.request_state(entry.node_id, ACTION_TARGETS[entry.action])
        except (IllegalTransition, UnknownNode) as exc:
            LOG.warning("Cue %s for node %s rejected: %s", entry.action.value, entry.node_id, exc)
