"""Domain models for the provider transport layer."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from switchboard.errors import ConfigurationError

R = TypeVar("R", bound="RequestModel")


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


class RequestModel(BaseModel):
    """Base for provider request models.

    ``messages`` is the only field that grows across rounds; everything else
    is set once when the context is cast.
    """

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    #: Fields kept for local bookkeeping and never sent to the API.
    LOCAL_FIELDS: ClassVar[frozenset[str]] = frozenset()

    stream: bool | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def cast(cls: type[R], context: Mapping[str, Any]) -> R:
        """Validate a loosely-typed context into this request type."""
        try:
            return cls.model_validate(dict(context))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid {cls.__name__} context: {e.errors()[0].get('msg', e)}",
                hint=f"Check the {e.errors()[0].get('loc')} field of the prompt context.",
            ) from e

    def to_params(self) -> dict[str, Any]:
        """Serialize to API parameters, dropping unset fields."""
        params = self.model_dump(
            exclude_none=True, exclude=set(self.LOCAL_FIELDS), by_alias=True
        )
        if not params.get("stream"):
            params.pop("stream", None)
        return params
