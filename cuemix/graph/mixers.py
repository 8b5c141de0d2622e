"""
Mixer node configuration and slot addressing.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import Field, model_validator

from ..errors import InvalidConfig, InvalidTopology
from .models import ConfigModel, Integer, Number, parse_model

DEFAULT_SLOTS = 4

MIXER_SETTINGS = ("width", "height", "sample_rate", "fallback_image", "fallback_timeout")

# Settings that may change while the mixer is running.
CONTROLLABLE_SETTINGS = ("width", "height", "fallback_timeout")

SlotId = Union[int, str]

Alpha = Annotated[Number, Field(ge=0.0, le=1.0)]
Volume = Annotated[Number, Field(ge=0.0, le=10.0)]
Extent = Annotated[Integer, Field(ge=0)]
SlotName = Annotated[str, Field(min_length=1)]


class VideoSlotProperties(ConfigModel):
    alpha: Optional[Alpha] = None
    xpos: Optional[Integer] = None
    ypos: Optional[Integer] = None
    width: Optional[Extent] = None
    height: Optional[Extent] = None
    zorder: Optional[Extent] = None


class AudioSlotProperties(ConfigModel):
    volume: Optional[Volume] = None
    mute: Optional[bool] = None


SLOT_PROPERTIES = {
    "video": VideoSlotProperties,
    "audio": AudioSlotProperties,
}

# Properties that accept interpolated control points.
NUMERIC_SLOT_PROPERTIES = {
    "video::alpha",
    "video::xpos",
    "video::ypos",
    "video::width",
    "video::height",
    "audio::volume",
}


def parse_slot_property(key: str) -> Tuple[str, str]:
    """Split ``video::alpha`` style keys into ``(media, property)``."""

    media, sep, prop = key.partition("::")
    if not sep or media not in SLOT_PROPERTIES:
        raise InvalidConfig(f"Slot property '{key}' must be prefixed with video:: or audio::")
    if prop not in SLOT_PROPERTIES[media].model_fields:
        raise InvalidConfig(f"No slot property '{prop}' for {media} streams")
    return media, prop


def validate_slot_property(key: str, value: Any) -> Any:
    media, prop = parse_slot_property(key)
    if value is None:
        raise InvalidConfig(f"Slot property '{key}' requires a value")
    return getattr(parse_model(SLOT_PROPERTIES[media], {prop: value}), prop)


def validate_slot_config(config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not config:
        return {}
    if not isinstance(config, Mapping):
        raise InvalidConfig("Slot config must be a mapping")
    return {key: validate_slot_property(key, value) for key, value in config.items()}


class MixerConfig(ConfigModel):
    width: Integer = Field(default=1920, ge=1)
    height: Integer = Field(default=1080, ge=1)
    sample_rate: Integer = Field(default=48000, ge=1)
    fallback_image: str = ""
    # Milliseconds without input on any slot before the base plate shows.
    fallback_timeout: Integer = Field(default=500, ge=0)
    slots: Integer = Field(default=DEFAULT_SLOTS, ge=1)
    slot_names: List[SlotName] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _slots_from_names(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "slots" not in data:
            names = data.get("slot_names")
            if isinstance(names, (list, tuple)) and names:
                return {**data, "slots": len(names)}
        return data

    @model_validator(mode="after")
    def _check_slot_names(self) -> "MixerConfig":
        if "slot_names" not in self.model_fields_set:
            return self
        if not self.slot_names:
            raise ValueError("'slot_names' must be a non-empty list")
        if len(set(self.slot_names)) != len(self.slot_names):
            raise ValueError("'slot_names' must be unique")
        if self.slots != len(self.slot_names):
            raise ValueError("'slots' does not match the number of 'slot_names'")
        return self

    def to_params(self) -> Dict[str, Any]:
        return self.model_dump()

    def slot_ids(self) -> List[SlotId]:
        if self.slot_names:
            return list(self.slot_names)
        return list(range(self.slots))

    def resolve_slot(self, slot: Any) -> SlotId:
        """
        Normalise a client supplied slot reference.

        Numbered mixers accept ints (or digit strings); named mixers accept
        their configured names.  Anything else is a topology violation.
        """

        if isinstance(slot, bool) or slot is None:
            raise InvalidTopology("Mixer connections require a slot")
        if self.slot_names:
            if isinstance(slot, str) and slot in self.slot_names:
                return slot
            raise InvalidTopology(f"Unknown mixer slot '{slot}'")
        if isinstance(slot, str) and slot.strip().isdigit():
            slot = int(slot.strip())
        if not isinstance(slot, int) or not 0 <= slot < self.slots:
            raise InvalidTopology(f"Mixer slot {slot!r} is outside 0..{self.slots - 1}")
        return slot


def validate_setting(name: str, value: Any) -> Any:
    if name not in MIXER_SETTINGS:
        raise InvalidConfig(f"No setting with name {name} on mixer nodes")
    return getattr(MixerConfig.from_mapping({name: value}), name)
