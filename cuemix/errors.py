"""
Error taxonomy shared by the graph, scheduler, failover and API layers.
"""

from __future__ import annotations


class GraphError(RuntimeError):
    """Base class for orchestrator errors."""

    code = "E_GRAPH"


class InvalidConfig(GraphError):
    """Raised when a node, schedule or engine configuration is malformed."""

    code = "E_INVALID_CONFIG"


class UnknownNode(GraphError):
    """Raised when a command references a node that does not exist."""

    code = "E_UNKNOWN_NODE"

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Unknown node '{node_id}'")
        self.node_id = node_id


class UnknownConnection(GraphError):
    """Raised when a command references a connection that does not exist."""

    code = "E_UNKNOWN_CONNECTION"


class InvalidTopology(GraphError):
    """Raised when a connection would violate direction, slot or capacity rules."""

    code = "E_INVALID_TOPOLOGY"


class IllegalTransition(GraphError):
    """Raised when a node state change is requested from an invalid state."""

    code = "E_ILLEGAL_TRANSITION"


class PipelineTimeout(GraphError):
    """The pipeline engine did not acknowledge a requested state in time."""

    code = "E_PIPELINE_TIMEOUT"


class PipelineError(GraphError):
    """The pipeline engine reported a failure."""

    code = "E_PIPELINE_ERROR"


class PipelineUnavailableError(PipelineError):
    """Raised when the pipeline engine cannot be used due to missing dependencies."""

    code = "E_PIPELINE_UNAVAILABLE"
