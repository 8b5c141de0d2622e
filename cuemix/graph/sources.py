"""
Source node configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from .models import ConfigModel

LOG = logging.getLogger(__name__)

TEST_PATTERN_SCHEME = "test://"


class SourceConfig(ConfigModel):
    uri: str = Field(min_length=1)
    expect_eos: bool = False

    @field_validator("uri")
    @classmethod
    def _resolve_uri(cls, value: str) -> str:
        return resolve_uri(value)

    @property
    def test_pattern(self) -> Optional[str]:
        if self.uri.startswith(TEST_PATTERN_SCHEME):
            return self.uri[len(TEST_PATTERN_SCHEME):] or "smpte"
        return None

    def to_params(self) -> Dict[str, Any]:
        return {"uri": self.uri, "pattern": self.test_pattern, "expect_eos": self.expect_eos}


def resolve_uri(candidate: str) -> str:
    """
    Coerce bare filesystem paths into ``file://`` URIs.

    Anything that already looks like a URI is returned untouched; a path that
    does not exist is rejected so that typos surface at creation time.
    """

    if "://" in candidate or candidate.startswith("file:"):
        return candidate
    path = Path(candidate).expanduser()
    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError:
        raise ValueError(f"source path '{candidate}' does not exist") from None
    except RuntimeError:  # pragma: no cover - symlink loops
        LOG.debug("Failed to resolve path '%s' for URI coercion", candidate, exc_info=True)
        raise ValueError(f"source path '{candidate}' cannot be resolved") from None
    return resolved.as_uri()
