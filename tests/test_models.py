"""Tests for the conversation and generation value types."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tether.core.models import (
    FinishReason,
    GenerateConfig,
    GenerationResult,
    ImagePart,
    Message,
    MessageMetadata,
    RateLimitInfo,
    Role,
    TextPart,
    ToolCall,
    ToolChoice,
    ToolOutput,
    UsageStats,
    parse_retry_after,
)


def _call(call_id: str = "c1") -> ToolCall:
    return ToolCall(id=call_id, tool_name="echo", arguments_json='{"input": "x"}')


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_message_constructors():
    assert Message.system("s").role == Role.SYSTEM
    user = Message.user([TextPart(text="a"), ImagePart(data="Zg=="), TextPart(text="b")])
    assert isinstance(user.content, tuple)
    assert user.text_value == "ab"

    reply = Message.assistant("hi", tool_calls=[_call()], model="m", token_count=3)
    assert reply.tool_calls == (_call(),)
    assert reply.metadata.model == "m"
    assert Message.assistant("plain").metadata is None


def test_tool_output_message_carries_call_id():
    msg = Message.tool_output(ToolOutput(id="c7", tool_name="echo", content="done"))
    assert msg.role == Role.TOOL
    assert msg.tool_call_id == "c7"
    assert msg.tool_name == "echo"
    assert msg.content == "done"


def test_tool_message_requires_call_id():
    with pytest.raises(ValidationError):
        Message(role=Role.TOOL, content="orphan")


def test_tool_message_must_be_text():
    with pytest.raises(ValidationError):
        Message(role=Role.TOOL, tool_call_id="c1", content=(TextPart(text="x"),))


def test_only_assistant_messages_carry_tool_calls():
    with pytest.raises(ValidationError):
        Message(role=Role.USER, content="x", metadata=MessageMetadata(tool_calls=(_call(),)))


def test_messages_are_immutable():
    msg = Message.user("x")
    with pytest.raises(ValidationError):
        msg.content = "y"


def test_tool_call_arguments():
    assert _call().arguments == {"input": "x"}
    assert ToolCall(id="a", tool_name="t", arguments_json="  ").arguments == {}
    with pytest.raises(ValueError):
        ToolCall(id="a", tool_name="t", arguments_json="[1]").arguments


def test_named_tool_choice_needs_a_name():
    with pytest.raises(ValidationError):
        ToolChoice(mode="tool")


# ---------------------------------------------------------------------------
# Generation config
# ---------------------------------------------------------------------------

def test_generate_config_clamps_sampling():
    config = GenerateConfig(temperature=5.0, top_p=-1.0)
    assert config.temperature == 2.0
    assert config.top_p == 0.0

    assert config.with_temperature(-3).temperature == 0.0
    assert config.with_top_p(1.5).top_p == 1.0
    assert config.with_frequency_penalty(9).frequency_penalty == 2.0
    assert config.with_presence_penalty(-9).presence_penalty == -2.0


def test_with_methods_return_copies():
    base = GenerateConfig()
    changed = base.with_max_tokens(10).with_top_k(5).with_service_tier("priority")

    assert base.max_tokens == 1024
    assert changed.max_tokens == 10
    assert changed.top_k == 5
    assert changed.service_tier == "priority"


def test_presets():
    assert GenerateConfig.default() == GenerateConfig()
    assert GenerateConfig.creative().temperature == 0.9
    assert GenerateConfig.precise().temperature == 0.1
    assert "```" in GenerateConfig.code().stop_sequences


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def test_result_tool_calls_must_match_finish_reason():
    with pytest.raises(ValidationError):
        GenerationResult(text="", finish_reason=FinishReason.TOOL_CALLS)
    with pytest.raises(ValidationError):
        GenerationResult(text="", finish_reason=FinishReason.STOP, tool_calls=(_call(),))

    ok = GenerationResult(finish_reason=FinishReason.TOOL_CALLS, tool_calls=(_call(),))
    assert ok.has_tool_calls


def test_usage_total_tokens():
    usage = UsageStats(prompt_tokens=7, completion_tokens=5)
    assert usage.total_tokens == 12
    assert usage.model_dump()["total_tokens"] == 12


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------

def test_parse_retry_after_seconds_and_dates():
    now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert parse_retry_after("2") == 2.0
    assert parse_retry_after(" 1.5 ") == 1.5
    assert parse_retry_after("-4") is None
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 01 Jan 2025 12:00:30 GMT", now=now) == 30.0
    assert parse_retry_after("Wed, 01 Jan 2025 11:00:00 GMT", now=now) == 0.0


def test_rate_limit_info_from_anthropic_headers():
    info = RateLimitInfo.from_headers({
        "request-id": "req_1",
        "anthropic-organization-id": "org_1",
        "anthropic-ratelimit-requests-limit": "50",
        "anthropic-ratelimit-requests-remaining": "49",
        "anthropic-ratelimit-tokens-remaining": "not-a-number",
        "anthropic-ratelimit-requests-reset": "2025-01-01T12:00:00Z",
        "retry-after": "3",
    })

    assert info.request_id == "req_1"
    assert info.organization_id == "org_1"
    assert info.limit_requests == 50
    assert info.remaining_requests == 49
    assert info.remaining_tokens is None
    assert info.reset_requests == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert info.retry_after == 3.0


def test_rate_limit_info_from_openai_headers():
    before = datetime.now(timezone.utc)
    info = RateLimitInfo.from_headers({
        "X-Request-Id": "req_2",
        "x-ratelimit-limit-tokens": "1000",
        "x-ratelimit-remaining-tokens": "900",
        "x-ratelimit-reset-tokens": "6m0s",
        "x-ratelimit-reset-requests": "250ms",
    })

    assert info.request_id == "req_2"
    assert info.limit_tokens == 1000
    assert info.remaining_tokens == 900
    assert info.reset_tokens - before >= timedelta(minutes=6)
    assert info.reset_tokens - before < timedelta(minutes=6, seconds=5)
    assert info.reset_requests - before < timedelta(seconds=5)


def test_rate_limit_info_tolerates_missing_headers():
    info = RateLimitInfo.from_headers({})
    assert info == RateLimitInfo()
