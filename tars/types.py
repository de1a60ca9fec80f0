"""Core types for tars."""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageStats(BaseModel):
    """Token usage reported by a single agent invocation."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0

    @field_validator("input_tokens", "output_tokens", "cached_tokens", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, int(value))

    @property
    def net_input_tokens(self) -> int:
        """Input tokens actually consumed, excluding cache hits."""
        return max(0, self.input_tokens - self.cached_tokens)


# ---------------------------------------------------------------------------
# Agent events
# ---------------------------------------------------------------------------


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str | None = None


class TextEvent(_Event):
    type: Literal["text"] = "text"
    content: str
    role: str = "assistant"


class ThoughtEvent(_Event):
    type: Literal["thought"] = "thought"
    content: str


class ToolCallEvent(_Event):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    tool_id: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResponseEvent(_Event):
    type: Literal["tool_response"] = "tool_response"
    tool_id: str | None = None
    result: Any = None
    status: str | None = None


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str


class DoneEvent(_Event):
    type: Literal["done"] = "done"
    usage: UsageStats | None = None


AgentEvent = Annotated[
    Union[TextEvent, ThoughtEvent, ToolCallEvent, ToolResponseEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]

agent_event_adapter: TypeAdapter[AgentEvent] = TypeAdapter(AgentEvent)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    """Base for records stored as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class SessionRecord(_CamelModel):
    """Durable state of the single active conversation."""

    session_id: str
    created_at: datetime = Field(default_factory=utc_now)
    # Current context window size, overwritten on every interaction
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    # Current cache state, overwritten on every interaction
    total_cached_tokens: int = 0
    total_net_tokens: int = 0
    interaction_count: int = 0
    last_interaction_at: datetime = Field(default_factory=utc_now)
    last_input_tokens: int = 0


class Task(_CamelModel):
    """A scheduled prompt, as stored in the task collection file."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    title: str
    prompt: str
    schedule: str
    next_run: datetime
    last_run: datetime | None = None
    enabled: bool = True
    mode: Literal["silent", "notify"] = "silent"
    source: Literal["user", "system"] = "user"
    failed_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("next_run", "last_run", "created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


task_list_adapter: TypeAdapter[list[Task]] = TypeAdapter(list[Task])
