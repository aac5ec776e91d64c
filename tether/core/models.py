"""
tether.core.models — Pydantic value types for conversations and generations.

Messages, tool calls and generation results are immutable once built.
The chat session only ever appends or truncates; nothing is edited in place.
"""

from __future__ import annotations

import json
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(StrEnum):
    """Why a generation stopped."""
    STOP = "stop"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    PAUSE_TURN = "pause_turn"
    MODEL_CONTEXT_WINDOW_EXCEEDED = "model_context_window_exceeded"


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------

class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Inline image, base64-encoded."""
    model_config = ConfigDict(frozen=True)
    type: Literal["image"] = "image"
    data: str
    mime_type: str = "image/png"


class AudioPart(BaseModel):
    """Inline audio, base64-encoded."""
    model_config = ConfigDict(frozen=True)
    type: Literal["audio"] = "audio"
    data: str
    format: str = "wav"


ContentPart = Annotated[Union[TextPart, ImagePart, AudioPart], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    """A model's request to invoke one tool.

    ``id`` is threaded unchanged into the tool output and the tool message
    that answers it.
    """
    model_config = ConfigDict(frozen=True)
    id: str
    tool_name: str
    arguments_json: str = "{}"

    @property
    def arguments(self) -> dict[str, Any]:
        """Decoded arguments.  Raises ``json.JSONDecodeError`` on bad JSON."""
        if not self.arguments_json.strip():
            return {}
        value = json.loads(self.arguments_json)
        if not isinstance(value, dict):
            raise ValueError(f"Tool arguments must be a JSON object, got {type(value).__name__}")
        return value


class ToolOutput(BaseModel):
    """Result of executing one :class:`ToolCall`."""
    model_config = ConfigDict(frozen=True)
    id: str
    tool_name: str
    content: str


class ToolDefinition(BaseModel):
    """Name, description and JSON-schema parameters advertised to the model."""
    model_config = ConfigDict(frozen=True)
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolChoice(BaseModel):
    model_config = ConfigDict(frozen=True)
    mode: Literal["auto", "none", "required", "tool"] = "auto"
    name: str | None = None

    @model_validator(mode="after")
    def _named_tool_has_name(self) -> "ToolChoice":
        if self.mode == "tool" and not self.name:
            raise ValueError("ToolChoice.tool() needs a tool name")
        return self

    @classmethod
    def auto(cls) -> "ToolChoice":
        return cls(mode="auto")

    @classmethod
    def none(cls) -> "ToolChoice":
        return cls(mode="none")

    @classmethod
    def required(cls) -> "ToolChoice":
        return cls(mode="required")

    @classmethod
    def tool(cls, name: str) -> "ToolChoice":
        return cls(mode="tool", name=name)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)
    token_count: int | None = None
    generation_time: float | None = None
    model: str | None = None
    tokens_per_second: float | None = None
    tool_calls: tuple[ToolCall, ...] = ()


class Message(BaseModel):
    """One entry in a conversation transcript."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    content: str | tuple[ContentPart, ...] = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    metadata: MessageMetadata | None = None
    timestamp: float = Field(default_factory=time.time)

    @model_validator(mode="after")
    def _check_roles(self) -> "Message":
        if self.role == Role.TOOL:
            if not self.tool_call_id:
                raise ValueError("tool messages must carry the id of the call they answer")
            if not isinstance(self.content, str):
                raise ValueError("tool messages carry exactly one text payload")
        if self.tool_calls and self.role != Role.ASSISTANT:
            raise ValueError("only assistant messages may carry tool calls")
        return self

    # -- constructors -------------------------------------------------------

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, content: str | list[ContentPart] | tuple[ContentPart, ...]) -> "Message":
        if isinstance(content, list):
            content = tuple(content)
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        text: str,
        *,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
        model: str | None = None,
        token_count: int | None = None,
        generation_time: float | None = None,
        tokens_per_second: float | None = None,
    ) -> "Message":
        metadata = None
        if tool_calls or model or token_count is not None or generation_time is not None:
            metadata = MessageMetadata(
                tool_calls=tuple(tool_calls),
                model=model,
                token_count=token_count,
                generation_time=generation_time,
                tokens_per_second=tokens_per_second,
            )
        return cls(role=Role.ASSISTANT, content=text, metadata=metadata)

    @classmethod
    def tool_output(cls, output: ToolOutput) -> "Message":
        return cls(
            role=Role.TOOL,
            content=output.content,
            tool_call_id=output.id,
            tool_name=output.tool_name,
        )

    # -- accessors ----------------------------------------------------------

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return self.metadata.tool_calls if self.metadata else ()

    @property
    def text_value(self) -> str:
        """Concatenated text of the message, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


# ---------------------------------------------------------------------------
# Generation config
# ---------------------------------------------------------------------------

def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class GenerateConfig(BaseModel):
    """
    Sampling and tool settings for one request.

    Immutable: every ``with_*`` method returns a modified copy.
    """
    model_config = ConfigDict(frozen=True)

    max_tokens: int | None = 1024
    min_tokens: int | None = None
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int | None = None
    repetition_penalty: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    stop_sequences: tuple[str, ...] = ()
    seed: int | None = None
    return_logprobs: bool = False
    top_logprobs: int | None = None
    user_id: str | None = None
    service_tier: str | None = None
    tools: tuple[ToolDefinition, ...] = ()
    tool_choice: ToolChoice = Field(default_factory=ToolChoice.auto)

    @field_validator("temperature")
    @classmethod
    def _clamp_temperature(cls, v: float) -> float:
        return _clamp(v, 0.0, 2.0)

    @field_validator("top_p")
    @classmethod
    def _clamp_top_p(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)

    # -- presets ------------------------------------------------------------

    @classmethod
    def default(cls) -> "GenerateConfig":
        return cls()

    @classmethod
    def creative(cls) -> "GenerateConfig":
        return cls(temperature=0.9, top_p=0.95, frequency_penalty=0.5)

    @classmethod
    def precise(cls) -> "GenerateConfig":
        return cls(temperature=0.1, top_p=0.5, repetition_penalty=1.1)

    @classmethod
    def code(cls) -> "GenerateConfig":
        return cls(temperature=0.2, top_p=0.9, stop_sequences=("```", "\n\n\n"))

    # -- copy-with ----------------------------------------------------------
    # model_copy() skips validation, so clamping is repeated here.

    def _with(self, **update: Any) -> "GenerateConfig":
        return self.model_copy(update=update)

    def with_max_tokens(self, value: int | None) -> "GenerateConfig":
        return self._with(max_tokens=value)

    def with_min_tokens(self, value: int | None) -> "GenerateConfig":
        return self._with(min_tokens=value)

    def with_temperature(self, value: float) -> "GenerateConfig":
        return self._with(temperature=_clamp(value, 0.0, 2.0))

    def with_top_p(self, value: float) -> "GenerateConfig":
        return self._with(top_p=_clamp(value, 0.0, 1.0))

    def with_top_k(self, value: int | None) -> "GenerateConfig":
        return self._with(top_k=value)

    def with_repetition_penalty(self, value: float) -> "GenerateConfig":
        return self._with(repetition_penalty=value)

    def with_frequency_penalty(self, value: float) -> "GenerateConfig":
        return self._with(frequency_penalty=_clamp(value, -2.0, 2.0))

    def with_presence_penalty(self, value: float) -> "GenerateConfig":
        return self._with(presence_penalty=_clamp(value, -2.0, 2.0))

    def with_stop_sequences(self, sequences: list[str] | tuple[str, ...]) -> "GenerateConfig":
        return self._with(stop_sequences=tuple(sequences))

    def with_seed(self, seed: int | None) -> "GenerateConfig":
        return self._with(seed=seed)

    def with_logprobs(self, enabled: bool = True, top: int | None = None) -> "GenerateConfig":
        return self._with(return_logprobs=enabled, top_logprobs=top)

    def with_user_id(self, user_id: str | None) -> "GenerateConfig":
        return self._with(user_id=user_id)

    def with_service_tier(self, tier: str | None) -> "GenerateConfig":
        return self._with(service_tier=tier)

    def with_tools(self, tools: list[ToolDefinition] | tuple[ToolDefinition, ...]) -> "GenerateConfig":
        return self._with(tools=tuple(tools))

    def with_tool_choice(self, choice: ToolChoice) -> "GenerateConfig":
        return self._with(tool_choice=choice)


# ---------------------------------------------------------------------------
# Usage / rate limits
# ---------------------------------------------------------------------------

class UsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_read_tokens: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _parse_reset(value: str | None, now: datetime) -> datetime | None:
    """Parse an RFC 3339 timestamp, or a relative duration like ``6m0s``."""
    if not value:
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    parts = _DURATION_RE.findall(value)
    if parts and "".join(n + u for n, u in parts) == value:
        seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
        return now + timedelta(seconds=seconds)
    return None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """``Retry-After`` as delta-seconds or an HTTP-date, in seconds from now."""
    if value is None:
        return None
    value = value.strip()
    try:
        seconds = float(value)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RateLimitInfo(BaseModel):
    """Advisory rate-limit state read from response headers."""
    model_config = ConfigDict(frozen=True)

    request_id: str | None = None
    organization_id: str | None = None
    limit_requests: int | None = None
    limit_tokens: int | None = None
    remaining_requests: int | None = None
    remaining_tokens: int | None = None
    reset_requests: datetime | None = None
    reset_tokens: datetime | None = None
    retry_after: float | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "RateLimitInfo":
        """Read both the ``anthropic-ratelimit-*`` and ``x-ratelimit-*`` families."""
        h = {k.lower(): v for k, v in headers.items()}
        now = datetime.now(timezone.utc)

        def pick(name: str) -> str | None:
            return h.get(f"anthropic-ratelimit-{name}") or h.get(f"x-ratelimit-{name}")

        return cls(
            request_id=h.get("request-id") or h.get("x-request-id"),
            organization_id=h.get("anthropic-organization-id") or h.get("openai-organization"),
            limit_requests=_parse_int(pick("requests-limit") or h.get("x-ratelimit-limit-requests")),
            limit_tokens=_parse_int(pick("tokens-limit") or h.get("x-ratelimit-limit-tokens")),
            remaining_requests=_parse_int(
                pick("requests-remaining") or h.get("x-ratelimit-remaining-requests")
            ),
            remaining_tokens=_parse_int(
                pick("tokens-remaining") or h.get("x-ratelimit-remaining-tokens")
            ),
            reset_requests=_parse_reset(
                pick("requests-reset") or h.get("x-ratelimit-reset-requests"), now
            ),
            reset_tokens=_parse_reset(
                pick("tokens-reset") or h.get("x-ratelimit-reset-tokens"), now
            ),
            retry_after=parse_retry_after(h.get("retry-after"), now),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class GenerationResult(BaseModel):
    """The complete outcome of one non-streaming generation."""
    model_config = ConfigDict(frozen=True)

    text: str = ""
    token_count: int = 0
    finish_reason: FinishReason = FinishReason.STOP
    usage: UsageStats | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    rate_limit_info: RateLimitInfo | None = None
    generation_time: float = 0.0
    tokens_per_second: float = 0.0

    @model_validator(mode="after")
    def _tool_calls_match_finish_reason(self) -> "GenerationResult":
        if bool(self.tool_calls) != (self.finish_reason == FinishReason.TOOL_CALLS):
            raise ValueError(
                "tool_calls must be non-empty exactly when finish_reason is tool_calls "
                f"(finish_reason={self.finish_reason.value}, tool_calls={len(self.tool_calls)})"
            )
        return self

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


class GenerationChunk(BaseModel):
    """One increment of a streaming generation."""
    model_config = ConfigDict(frozen=True)

    text: str = ""
    token_count: int = 0
    is_complete: bool = False
    finish_reason: FinishReason | None = None
    usage: UsageStats | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tokens_per_second: float | None = None
    timestamp: float = Field(default_factory=time.time)

    @classmethod
    def completion(
        cls,
        finish_reason: FinishReason,
        *,
        usage: UsageStats | None = None,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
        tokens_per_second: float | None = None,
    ) -> "GenerationChunk":
        """The terminal chunk of a stream."""
        return cls(
            is_complete=True,
            finish_reason=finish_reason,
            usage=usage,
            tool_calls=tuple(tool_calls),
            tokens_per_second=tokens_per_second,
        )
