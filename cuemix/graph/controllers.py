"""
Time based property control.

A :class:`PropertyController` holds the pending control points of one mixer
setting or slot property and computes the value that should be applied at a
given wall-clock time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import InvalidConfig

SlotRef = Optional[Any]


class ControlMode(str, Enum):
    SET = "set"
    INTERPOLATE = "interpolate"


@dataclass(frozen=True)
class ControlPoint:
    id: str
    time: datetime
    value: Any
    mode: ControlMode = ControlMode.SET

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "time": self.time.isoformat(),
            "value": self.value,
            "mode": self.mode.value,
        }


class PropertyController:
    """
    Ordered control points for a single property.

    ``set`` points apply their value once their time is reached.
    ``interpolate`` points move linearly from the previously applied value
    (and its time, or the first observation) towards their own value.
    """

    def __init__(
        self,
        prop: str,
        *,
        slot: SlotRef = None,
        numeric: bool = True,
        integral: bool = False,
        initial: Any = None,
        validate: Optional[Callable[[str, Any], Any]] = None,
    ) -> None:
        self.prop = prop
        self.slot = slot
        self.numeric = numeric
        self.integral = integral
        self._validate = validate
        self._points: List[ControlPoint] = []
        self._last_value = initial
        self._last_time: Optional[datetime] = None

    def __bool__(self) -> bool:
        return bool(self._points)

    @property
    def points(self) -> List[ControlPoint]:
        return list(self._points)

    def add(self, point: ControlPoint) -> ControlPoint:
        if point.mode == ControlMode.INTERPOLATE and not self.numeric:
            raise InvalidConfig(f"Property '{self.prop}' cannot be interpolated")
        if self._validate is not None:
            point = ControlPoint(point.id, point.time, self._validate(self.prop, point.value), point.mode)
        self._points = [item for item in self._points if item.id != point.id]
        self._points.append(point)
        self._points.sort(key=lambda item: item.time)
        return point

    def remove(self, point_id: str) -> bool:
        remaining = [item for item in self._points if item.id != point_id]
        removed = len(remaining) != len(self._points)
        self._points = remaining
        return removed

    def synchronize(self, now: datetime) -> Tuple[bool, Any]:
        """
        Consume due points and return ``(changed, value)`` for ``now``.
        """

        if self._last_time is None:
            self._last_time = now
        changed = False
        value = self._last_value
        while self._points and self._points[0].time <= now:
            point = self._points.pop(0)
            value = point.value
            self._last_value = point.value
            self._last_time = point.time
            changed = True

        if self._points and self._points[0].mode == ControlMode.INTERPOLATE and self._last_value is not None:
            target = self._points[0]
            span = (target.time - self._last_time).total_seconds()
            if span > 0:
                fraction = min(1.0, max(0.0, (now - self._last_time).total_seconds() / span))
                value = self._last_value + (target.value - self._last_value) * fraction
                if self.integral:
                    value = int(round(value))
                changed = True
        return changed, value
