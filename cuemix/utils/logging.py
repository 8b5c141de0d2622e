"""
Logging setup shared by the CLI entrypoint and the demo scripts.
"""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# Loggers owned by the ASGI server; they follow the engine level instead of
# installing handlers of their own (uvicorn runs with ``log_config=None``).
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def resolve_level(level: Union[int, str]) -> int:
    """Turn ``"debug"``/``"INFO"``/``10`` into a numeric logging level."""

    if isinstance(level, int):
        return level
    candidate = logging.getLevelName(str(level).strip().upper())
    if isinstance(candidate, int):
        return candidate
    raise ValueError(f"Unknown log level '{level}'")


def configure_logging(
    level: Union[int, str] = logging.INFO,
    format: Optional[str] = None,
    *,
    server_loggers: Iterable[str] = SERVER_LOGGERS,
) -> None:
    """
    Configure the root logger once and align the server loggers with it.

    An existing root configuration (pytest, an embedding application) is left
    untouched apart from the level of the server loggers.
    """

    numeric = resolve_level(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=numeric,
            format=format or DEFAULT_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)],
        )
    for name in server_loggers:
        logging.getLogger(name).setLevel(numeric)
