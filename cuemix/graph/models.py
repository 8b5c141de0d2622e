"""
Pydantic base for node and slot configuration.
"""

from __future__ import annotations

from typing import Annotated, Any, Type, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError

from ..errors import InvalidConfig

ModelT = TypeVar("ModelT", bound=BaseModel)


def _reject_bool(value: Any) -> Any:
    # pydantic's lax mode would read True as 1
    if isinstance(value, bool):
        raise ValueError("booleans are not accepted here")
    return value


Integer = Annotated[int, BeforeValidator(_reject_bool)]
Number = Annotated[float, BeforeValidator(_reject_bool)]


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)

    @classmethod
    def from_mapping(cls: Type[ModelT], config: Any) -> ModelT:
        return parse_model(cls, config)


def parse_model(model: Type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` against ``model``, reporting failures as :class:`InvalidConfig`."""

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidConfig(describe_errors(exc)) from None


def describe_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(item) for item in error["loc"])
        parts.append(f"{field}: {error['msg']}" if field else error["msg"])
    return f"Invalid {exc.title}: " + "; ".join(parts)
