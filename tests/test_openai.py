"""Tests for the OpenAI-compatible provider and the provider registry."""

from __future__ import annotations

import json

import httpx
import pytest

from tether.adapters import PROVIDER_DEFAULTS, create_provider
from tether.adapters.anthropic import AnthropicProvider
from tether.adapters.openai import (
    OpenAIProvider,
    build_request_body,
    map_openai_error,
    parse_response,
)
from tether.core.errors import AIError, ErrorKind
from tether.core.models import (
    AudioPart,
    FinishReason,
    GenerateConfig,
    ImagePart,
    Message,
    TextPart,
    ToolCall,
    ToolChoice,
    ToolDefinition,
    ToolOutput,
)


def _chunks(*payloads) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _provider(handler, **kwargs) -> OpenAIProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")

    async def no_sleep(_delay: float) -> None:
        return None

    return OpenAIProvider("sk-test", client=client, sleep=no_sleep, **kwargs)


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

def test_request_body_fields():
    config = (
        GenerateConfig(max_tokens=64, temperature=0.3, top_p=0.8, frequency_penalty=0.5)
        .with_stop_sequences(["\n\n"])
        .with_seed(7)
        .with_logprobs(True, top=3)
        .with_user_id("u-1")
    )
    body = build_request_body([Message.system("sys"), Message.user("hi")], "gpt-4.1-mini", config, stream=True)

    assert body["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
    assert body["max_tokens"] == 64
    assert body["temperature"] == 0.3
    assert body["top_p"] == 0.8
    assert body["frequency_penalty"] == 0.5
    assert "presence_penalty" not in body
    assert body["stop"] == ["\n\n"]
    assert body["seed"] == 7
    assert body["logprobs"] is True
    assert body["top_logprobs"] == 3
    assert body["user"] == "u-1"
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}


def test_tool_messages_use_function_calling_shape():
    call = ToolCall(id="call_1", tool_name="echo", arguments_json='{"input": "x"}')
    messages = [
        Message.user("q"),
        Message.assistant("", tool_calls=[call]),
        Message.tool_output(ToolOutput(id="call_1", tool_name="echo", content="Echo: x")),
    ]
    body = build_request_body(messages, "m", GenerateConfig())

    assert body["messages"][1] == {
        "role": "assistant",
        "content": None,
        "tool_calls": [{
            "id": "call_1",
            "type": "function",
            "function": {"name": "echo", "arguments": '{"input": "x"}'},
        }],
    }
    assert body["messages"][2] == {"role": "tool", "tool_call_id": "call_1", "content": "Echo: x"}


def test_multimodal_parts():
    message = Message.user([
        TextPart(text="look"),
        ImagePart(data="aGk=", mime_type="image/png"),
        AudioPart(data="AAAA", format="mp3"),
    ])
    [encoded] = build_request_body([message], "m", GenerateConfig())["messages"]

    assert encoded["content"] == [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGk="}},
        {"type": "input_audio", "input_audio": {"data": "AAAA", "format": "mp3"}},
    ]


@pytest.mark.parametrize(
    "choice, expected",
    [
        (ToolChoice.auto(), "auto"),
        (ToolChoice.required(), "required"),
        (ToolChoice.tool("echo"), {"type": "function", "function": {"name": "echo"}}),
    ],
)
def test_tool_choice_encoding(choice, expected):
    config = GenerateConfig().with_tools([ToolDefinition(name="echo", description="d")]).with_tool_choice(choice)
    body = build_request_body([Message.user("x")], "m", config)

    assert body["tool_choice"] == expected
    assert body["tools"][0]["function"]["name"] == "echo"


# ---------------------------------------------------------------------------
# Response parsing and errors
# ---------------------------------------------------------------------------

def test_parse_text_response():
    result = parse_response({
        "choices": [{"message": {"content": "Hello"}, "finish_reason": "length"}],
        "usage": {"prompt_tokens": 4, "completion_tokens": 6, "prompt_tokens_details": {"cached_tokens": 2}},
    })

    assert result.text == "Hello"
    assert result.finish_reason == FinishReason.MAX_TOKENS
    assert result.usage.total_tokens == 10
    assert result.usage.cache_read_tokens == 2


def test_stop_with_tool_calls_is_promoted_to_tool_calls():
    result = parse_response({
        "choices": [{
            "message": {
                "content": None,
                "tool_calls": [{"id": "c1", "type": "function",
                                "function": {"name": "echo", "arguments": '{"input": "x"}'}}],
            },
            "finish_reason": "stop",
        }],
    })

    assert result.finish_reason == FinishReason.TOOL_CALLS
    assert result.tool_calls[0].arguments == {"input": "x"}


def test_parse_without_choices_is_a_generation_error():
    with pytest.raises(AIError) as info:
        parse_response({"choices": []})
    assert info.value.kind == ErrorKind.GENERATION_FAILED


@pytest.mark.parametrize(
    "status, code, kind",
    [
        (401, "invalid_api_key", ErrorKind.AUTHENTICATION_FAILED),
        (429, "insufficient_quota", ErrorKind.BILLING_ERROR),
        (400, "context_length_exceeded", ErrorKind.INVALID_INPUT),
        (404, "model_not_found", ErrorKind.INVALID_INPUT),
        (404, None, ErrorKind.MODEL_NOT_FOUND),
        (403, None, ErrorKind.AUTHENTICATION_FAILED),
    ],
)
def test_error_mapping(status, code, kind):
    payload = {"error": {"message": "details", "code": code}}
    assert map_openai_error(status, payload, json.dumps(payload)).kind == kind


# ---------------------------------------------------------------------------
# Provider over a mock transport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_sends_bearer_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "pong"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1},
        })

    async with _provider(handler) as provider:
        result = await provider.generate([Message.user("ping")], "gpt-4.1-mini")

    assert result.text == "pong"
    assert seen[0].url.path == "/v1/chat/completions"
    assert seen[0].headers["authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_stream_buffers_tool_call_fragments_per_index():
    body = _chunks(
        {"choices": [{"delta": {"role": "assistant", "content": "On it."}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call_a", "function": {"name": "first", "arguments": '{"n": '}},
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 1, "id": "call_b", "function": {"name": "second", "arguments": '{"m": 2}'}},
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 11, "completion_tokens": 5}},
    )

    async with _provider(lambda request: httpx.Response(200, content=body)) as provider:
        chunks = [chunk async for chunk in provider.stream([Message.user("go")], "m")]

    assert chunks[0].text == "On it."
    terminal = chunks[-1]
    assert terminal.is_complete
    assert terminal.finish_reason == FinishReason.TOOL_CALLS
    assert [(c.id, c.tool_name, c.arguments) for c in terminal.tool_calls] == [
        ("call_a", "first", {"n": 1}),
        ("call_b", "second", {"m": 2}),
    ]
    assert terminal.usage.prompt_tokens == 11
    assert terminal.usage.completion_tokens == 5


@pytest.mark.asyncio
async def test_stream_text_only():
    body = _chunks(
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
    )

    async with _provider(lambda request: httpx.Response(200, content=body)) as provider:
        chunks = [chunk async for chunk in provider.stream([Message.user("hi")], "m")]

    assert "".join(c.text for c in chunks) == "Hello"
    assert chunks[-1].finish_reason == FinishReason.STOP
    assert chunks[-1].tool_calls == ()


@pytest.mark.asyncio
async def test_stream_error_payload_raises():
    body = _chunks({"error": {"message": "model crashed"}})

    async with _provider(lambda request: httpx.Response(200, content=body)) as provider:
        with pytest.raises(AIError) as info:
            async for _ in provider.stream([Message.user("hi")], "m"):
                pass
    assert "model crashed" in str(info.value)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_create_provider_resolves_each_name():
    assert isinstance(create_provider("anthropic", "k"), AnthropicProvider)
    openai = create_provider("OpenAI", "k")
    assert isinstance(openai, OpenAIProvider)
    assert openai.name == "openai"


@pytest.mark.parametrize(
    "name, url",
    [("ollama", "http://localhost:11434"), ("lmstudio", "http://localhost:1234")],
)
def test_local_providers_default_base_url_and_need_no_key(name, url):
    provider = create_provider(name)
    assert provider.name == name
    assert provider.is_available
    assert str(provider._client.base_url).rstrip("/") == url


def test_openai_without_key_is_unavailable():
    assert not create_provider("openai").is_available


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError, match="Unknown provider"):
        create_provider("nope")
    assert set(PROVIDER_DEFAULTS) == {"anthropic", "openai", "ollama", "lmstudio"}
