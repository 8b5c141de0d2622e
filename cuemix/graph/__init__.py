"""
Node graph for the cuemix orchestrator.

Each submodule covers one part of the graph: kind-specific node
configuration (sources, mixers, outputs), the per-node state machine, time
based property controllers and the :class:`GraphManager` that owns the
topology.
"""

from __future__ import annotations

__all__ = [
    "Connection",
    "ControlMode",
    "ControlPoint",
    "DestinationConfig",
    "GraphManager",
    "GraphSnapshot",
    "MixerConfig",
    "Node",
    "NodeKind",
    "NodeState",
    "SourceConfig",
]

from .controllers import ControlMode, ControlPoint
from .manager import Connection, GraphManager, GraphSnapshot
from .mixers import MixerConfig
from .node import Node, NodeKind, NodeState
from .outputs import DestinationConfig
from .sources import SourceConfig
