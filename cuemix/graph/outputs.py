"""
Destination node configuration.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field, field_validator, model_validator

from .models import ConfigModel


class DestinationType(str, Enum):
    """Supported downstream consumers."""

    SCREEN = "screen"
    FILE = "file"
    RTMP = "rtmp"
    FAKE = "fake"


NEEDS_LOCATION = {DestinationType.FILE, DestinationType.RTMP}


class DestinationConfig(ConfigModel):
    type: DestinationType
    location: Optional[str] = Field(default=None, min_length=1)
    sync: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _check_location(self) -> "DestinationConfig":
        if self.type in NEEDS_LOCATION and not self.location:
            raise ValueError(f"{self.type.value} destinations require a 'location'")
        if self.type == DestinationType.RTMP and not self.location.startswith(("rtmp://", "rtmps://")):
            raise ValueError("rtmp destinations require an rtmp:// location")
        return self

    def to_params(self) -> Dict[str, Any]:
        return {"type": self.type.value, "location": self.location, "sync": self.sync}
