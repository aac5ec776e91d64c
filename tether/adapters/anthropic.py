"""
tether.adapters.anthropic — Anthropic Messages API provider.

Translates transcripts into ``POST /v1/messages`` bodies:
  - system messages become the top-level ``system`` field;
  - assistant tool calls become ``tool_use`` blocks;
  - tool messages become ``tool_result`` blocks in a user turn;
  - consecutive same-role turns are merged (strict alternation).

Streaming responses are SSE, folded by :class:`StreamAccumulator`.
"""

from __future__ import annotations

import asyncio
import importlib.util
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from tether.adapters.base import BaseProvider, ProviderAvailability
from tether.adapters.http import (
    POOL_LIMITS,
    RequestExecutor,
    RetryConfig,
    aiter_response_lines,
    build_timeout,
    extract_error_message,
)
from tether.core import json_repair
from tether.core.errors import AIError, ErrorKind, UnavailabilityReason
from tether.core.models import (
    AudioPart,
    FinishReason,
    GenerateConfig,
    GenerationChunk,
    GenerationResult,
    ImagePart,
    Message,
    RateLimitInfo,
    Role,
    TextPart,
    ToolCall,
    UsageStats,
)
from tether.streaming.accumulator import StreamAccumulator, map_stop_reason
from tether.streaming.sse import aiter_sse

logger = logging.getLogger("tether.adapters.anthropic")

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_PATH = "/v1/messages"

_HTTP2_AVAILABLE = importlib.util.find_spec("h2") is not None


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def map_anthropic_error(status: int, payload: dict[str, Any] | None, text: str) -> AIError:
    """Map a non-retryable error body (``{"type": "error", "error": {...}}``)."""
    err = (payload or {}).get("error")
    err_type = err.get("type") if isinstance(err, dict) else None
    message = extract_error_message(payload, text) or f"HTTP {status}"

    if err_type in ("invalid_request_error", "not_found_error"):
        return AIError.invalid_input(message)
    if err_type in ("authentication_error", "permission_error"):
        return AIError.authentication_failed(message)
    if err_type == "rate_limit_error":
        return AIError.rate_limited()
    if err_type == "billing_error":
        return AIError.billing(message)
    if err_type == "request_too_large":
        return AIError.invalid_input(f"Request exceeds the size limit. {message}")
    if err_type == "timeout_error":
        return AIError.timed_out(message=message)
    if err_type in ("api_error", "overloaded_error"):
        return AIError.server_error(status, message)
    return AIError(ErrorKind.GENERATION_FAILED, f"[{err_type or status}] {message}")


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

def _content_blocks(content: str | tuple[Any, ...]) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return content
    blocks: list[dict[str, Any]] = []
    for part in content:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
            })
        elif isinstance(part, AudioPart):
            # Not accepted by the Messages API
            logger.debug("Dropping audio part (%s) from Anthropic request", part.format)
    return blocks


def _tool_input(call: ToolCall) -> dict[str, Any]:
    value = json_repair.try_loads(call.arguments_json or "{}")
    return value if isinstance(value, dict) else {}


def _to_anthropic_message(msg: Message) -> dict[str, Any]:
    if msg.role == Role.TOOL:
        return {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.text_value,
            }],
        }

    if msg.role == Role.ASSISTANT and msg.tool_calls:
        blocks: list[dict[str, Any]] = []
        if msg.text_value:
            blocks.append({"type": "text", "text": msg.text_value})
        for call in msg.tool_calls:
            blocks.append({
                "type": "tool_use",
                "id": call.id,
                "name": call.tool_name,
                "input": _tool_input(call),
            })
        return {"role": "assistant", "content": blocks}

    return {"role": msg.role.value, "content": _content_blocks(msg.content)}


def _fix_alternation(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """The API requires strict user/assistant alternation: merge same-role runs."""
    fixed: list[dict[str, Any]] = []
    for msg in messages:
        if not fixed or fixed[-1]["role"] != msg["role"]:
            fixed.append(dict(msg))
            continue
        prev, curr = fixed[-1]["content"], msg["content"]
        if isinstance(prev, str) and isinstance(curr, str):
            fixed[-1]["content"] = prev + "\n" + curr
        else:
            if isinstance(prev, str):
                prev = [{"type": "text", "text": prev}] if prev else []
            if isinstance(curr, str):
                curr = [{"type": "text", "text": curr}] if curr else []
            fixed[-1]["content"] = prev + curr
    return fixed


def _tools_config(config: GenerateConfig) -> dict[str, Any]:
    if config.tool_choice.mode == "none" or not config.tools:
        return {}
    tools = [
        {"name": t.name, "description": t.description, "input_schema": t.parameters}
        for t in config.tools
    ]
    choice = config.tool_choice
    if choice.mode == "required":
        tool_choice: dict[str, Any] = {"type": "any"}
    elif choice.mode == "tool":
        tool_choice = {"type": "tool", "name": choice.name}
    else:
        tool_choice = {"type": "auto"}
    return {"tools": tools, "tool_choice": tool_choice}


def build_request_body(
    messages: list[Message],
    model: str,
    config: GenerateConfig,
    *,
    stream: bool = False,
) -> dict[str, Any]:
    system_parts = [m.text_value for m in messages if m.role == Role.SYSTEM]
    conv = [_to_anthropic_message(m) for m in messages if m.role != Role.SYSTEM]

    body: dict[str, Any] = {
        "model": model,
        "max_tokens": config.max_tokens or 1024,
        "messages": _fix_alternation(conv),
        "temperature": config.temperature,
    }
    if 0 < config.top_p < 1:
        body["top_p"] = config.top_p
    if system_parts:
        body["system"] = "\n\n".join(system_parts)
    if config.top_k is not None:
        body["top_k"] = config.top_k
    if config.stop_sequences:
        body["stop_sequences"] = list(config.stop_sequences)
    if config.user_id:
        body["metadata"] = {"user_id": config.user_id}
    if config.service_tier:
        body["service_tier"] = config.service_tier
    if stream:
        body["stream"] = True
    body.update(_tools_config(config))
    return body


# ---------------------------------------------------------------------------
# Response normalisation
# ---------------------------------------------------------------------------

def parse_response(
    data: dict[str, Any],
    *,
    rate_limit_info: RateLimitInfo | None = None,
    elapsed: float = 0.0,
) -> GenerationResult:
    """Convert a Messages API response into a :class:`GenerationResult`."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in data.get("content", []):
        kind = block.get("type")
        if kind == "text":
            text_parts.append(block.get("text", ""))
        elif kind == "tool_use":
            tool_calls.append(ToolCall(
                id=block["id"],
                tool_name=block["name"],
                arguments_json=json.dumps(block.get("input") or {}),
            ))
        # thinking and other block types are not user-facing

    stop_reason = data.get("stop_reason")
    finish_reason = map_stop_reason(stop_reason)
    text = "".join(text_parts)

    if not text and stop_reason != "tool_use":
        raise AIError.generation("API returned empty content")
    if finish_reason == FinishReason.TOOL_CALLS and not tool_calls:
        raise AIError.generation("stop_reason is tool_use but the response has no tool_use blocks")
    if finish_reason != FinishReason.TOOL_CALLS:
        tool_calls = []

    usage_data = data.get("usage") or {}
    usage = UsageStats(
        prompt_tokens=usage_data.get("input_tokens", 0) or 0,
        completion_tokens=usage_data.get("output_tokens", 0) or 0,
        cache_read_tokens=usage_data.get("cache_read_input_tokens", 0) or 0,
    )
    return GenerationResult(
        text=text,
        token_count=usage.completion_tokens,
        finish_reason=finish_reason,
        usage=usage,
        tool_calls=tuple(tool_calls),
        rate_limit_info=rate_limit_info,
        generation_time=elapsed,
        tokens_per_second=usage.completion_tokens / elapsed if elapsed > 0 else 0.0,
    )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class AnthropicProvider(BaseProvider):
    """Claude models over the Messages API."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "",
        retry: RetryConfig | None = None,
        timeout: float = 180.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(
            base_url=base_url or ANTHROPIC_BASE_URL,
            timeout=build_timeout(timeout),
            limits=POOL_LIMITS,
            http2=_HTTP2_AVAILABLE,
        )
        self._client.headers.update({
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        })
        self._executor = RequestExecutor(self._client, retry, map_anthropic_error, sleep=sleep)
        self._connection_warmed = False

    @property
    def availability_status(self) -> ProviderAvailability:
        if not self._api_key:
            return ProviderAvailability.unavailable(UnavailabilityReason.API_KEY_MISSING)
        return ProviderAvailability.ok()

    async def _generate(self, messages: list[Message], model: str, config: GenerateConfig) -> GenerationResult:
        body = build_request_body(messages, model, config)
        logger.debug("Anthropic request: %d messages, model=%s", len(body["messages"]), model)
        started = time.monotonic()
        data, rate_limit_info = await self._executor.post_json(MESSAGES_PATH, body)
        return parse_response(
            data, rate_limit_info=rate_limit_info, elapsed=time.monotonic() - started,
        )

    async def _stream(
        self, messages: list[Message], model: str, config: GenerateConfig,
    ) -> AsyncIterator[GenerationChunk]:
        body = build_request_body(messages, model, config, stream=True)
        acc = StreamAccumulator()
        async with self._executor.open_stream(MESSAGES_PATH, body) as resp:
            acc.rate_limit_info = RateLimitInfo.from_headers(resp.headers)
            async for event in aiter_sse(aiter_response_lines(resp)):
                if event.data.strip() == "[DONE]":
                    break
                for chunk in acc.feed_json(event.data):
                    yield chunk
                if acc.is_finished:
                    return
        terminal = acc.finish()
        if terminal is not None:
            yield terminal

    async def warm_up(self, model: str | None = None) -> None:
        """Pre-open the TCP + TLS connection so the first request skips the handshake."""
        if self._connection_warmed:
            return
        try:
            # The API answers HEAD with 405, but the connection is established
            await self._client.request("HEAD", MESSAGES_PATH, timeout=5.0)
        except httpx.HTTPError as exc:
            logger.debug("Anthropic warm-up failed (ignored): %s", exc)
        self._connection_warmed = True

    async def close(self) -> None:
        await self._client.aclose()
