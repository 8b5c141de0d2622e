"""
Pydantic schemas mirroring the REST/WS command contract.

Field names match the keyword arguments of the corresponding
:class:`~cuemix.orchestrator.Orchestrator` methods so a validated model can be
dumped straight into :meth:`Orchestrator.dispatch`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..errors import InvalidConfig

SlotValue = Optional[Union[int, str]]


class CommandModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_kwargs(self) -> Dict[str, Any]:
        return self.model_dump()


class CreateNodeRequest(CommandModel):
    kind: str
    config: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "node_id", "nodeId"))

    @field_validator("kind", mode="before")
    @classmethod
    def _normalise_kind(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if not result:
            raise ValueError("kind is required")
        return result


class ConnectRequest(CommandModel):
    src: str
    dst: str
    slot: SlotValue = None
    config: Dict[str, Any] = Field(default_factory=dict)


class DisconnectRequest(CommandModel):
    src: str
    dst: str
    slot: SlotValue = None


class ScheduleRequest(CommandModel):
    cue_time: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("cue_time", "cueTime"))
    duration: Optional[float] = None


class ScheduleCommand(ScheduleRequest):
    node: str


class NodeCommand(CommandModel):
    node: str


class StateRequest(CommandModel):
    target: str

    @field_validator("target", mode="before")
    @classmethod
    def _normalise_target(cls, value: object) -> str:
        return str(value or "").strip().lower()


class StateCommand(StateRequest):
    node: str


class BindFailoverRequest(CommandModel):
    mixer: str
    slot: SlotValue = None
    primary: str
    backups: List[str] = Field(default_factory=list)


class SlotRequest(CommandModel):
    mixer: str
    slot: SlotValue = None


class ControlPointRequest(CommandModel):
    property: str
    id: str
    time: datetime
    value: Any
    mode: str = "set"
    slot: SlotValue = None


class ControlPointCommand(ControlPointRequest):
    node: str


class RemoveControlPointCommand(CommandModel):
    node: str
    id: str


class InspectCommand(CommandModel):
    pass


COMMAND_MODELS: Dict[str, Type[CommandModel]] = {
    "create_node": CreateNodeRequest,
    "connect": ConnectRequest,
    "disconnect": DisconnectRequest,
    "schedule": ScheduleCommand,
    "unschedule": NodeCommand,
    "remove_node": NodeCommand,
    "request_state": StateCommand,
    "bind_failover": BindFailoverRequest,
    "unbind_failover": SlotRequest,
    "rearm": SlotRequest,
    "add_control_point": ControlPointCommand,
    "remove_control_point": RemoveControlPointCommand,
    "inspect": InspectCommand,
}


def parse_command(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate a ``{"type": ..., ...}`` command frame.

    Returns the keyword mapping expected by ``Orchestrator.dispatch``.  Raises
    :class:`InvalidConfig` for unknown command types and lets pydantic's
    ``ValidationError`` propagate for malformed arguments.
    """

    if not isinstance(payload, Mapping):
        raise InvalidConfig("Command must be a JSON object")
    body = dict(payload)
    command_type = str(body.pop("type", "") or "").strip()
    model = COMMAND_MODELS.get(command_type)
    if model is None:
        raise InvalidConfig(f"Unknown command '{command_type}'")
    kwargs = model.model_validate(body).to_kwargs()
    kwargs["type"] = command_type
    return kwargs
