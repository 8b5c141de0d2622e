"""
Pipeline adapters bridging the node graph to executable backends.
"""

from __future__ import annotations

from .adapter import (
    DryRunPipelineAdapter,
    ElementHandle,
    ElementState,
    PipelineAdapter,
    PipelineEvent,
    PipelineEventType,
)
from .gst_adapter import GStreamerPipelineAdapter, gst_available

__all__ = [
    "PipelineAdapter",
    "DryRunPipelineAdapter",
    "GStreamerPipelineAdapter",
    "ElementHandle",
    "ElementState",
    "PipelineEvent",
    "PipelineEventType",
    "gst_available",
]
