"""
cuemix live compositing orchestrator.

The package manages a graph of media processing nodes (sources, mixers and
destinations), schedules their activation against wall-clock cue times and
re-routes mixer slots when a source fails.  Actual media work is delegated to
a pipeline engine through :mod:`cuemix.runtime`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .errors import InvalidConfig

__all__ = [
    "EngineConfig",
    "DEFAULT_PROFILES_PATH",
]

DEFAULT_PROFILES_PATH = Path(__file__).resolve().parent / "configs" / "profiles.yaml"
ENV_PROFILES_VAR = "CUEMIX_PROFILES"

BACKENDS = ("gstreamer", "dry-run")


@dataclass(frozen=True)
class EngineConfig:
    """Top level engine configuration, resolved from a YAML profile."""

    profile: str = "default"
    host: str = "127.0.0.1"
    port: int = 8080
    backend: str = "gstreamer"
    tick_interval: float = 0.1
    grace_period: float = 5.0
    log_level: str = "INFO"
    event_queue_size: int = 256
    ping_interval: float = 30.0

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise InvalidConfig(f"backend must be one of {', '.join(BACKENDS)}, got '{self.backend}'")
        if float(self.tick_interval) <= 0:
            raise InvalidConfig("tick_interval must be positive")
        if float(self.grace_period) <= 0:
            raise InvalidConfig("grace_period must be positive")

    @classmethod
    def from_mapping(cls, profile: str, values: Dict[str, Any]) -> "EngineConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidConfig(f"Unknown settings in profile '{profile}': {', '.join(unknown)}")
        payload = dict(values)
        payload["profile"] = profile
        return cls(**payload)

    @classmethod
    def load(cls, profile: str = "default", path: Optional[Union[str, Path]] = None) -> "EngineConfig":
        """
        Read ``profile`` from the profiles YAML file.

        The file is looked up from ``path``, then the ``CUEMIX_PROFILES``
        environment variable, then the profiles bundled with the package.
        """

        if path is None:
            path = os.environ.get(ENV_PROFILES_VAR) or DEFAULT_PROFILES_PATH
        profiles_path = Path(path).expanduser()
        try:
            with profiles_path.open("r", encoding="utf-8") as handle:
                profiles = yaml.safe_load(handle) or {}
        except FileNotFoundError:
            raise InvalidConfig(f"Profiles file '{profiles_path}' does not exist") from None

        if not isinstance(profiles, dict):
            raise InvalidConfig(f"Profiles file '{profiles_path}' must contain a mapping")
        values = profiles.get(profile)
        if values is None:
            raise InvalidConfig(f"Profile '{profile}' not found in '{profiles_path}'")
        if not isinstance(values, dict):
            raise InvalidConfig(f"Profile '{profile}' must be a mapping")
        return cls.from_mapping(profile, values)

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)
