"""
tether.adapters.openai — OpenAI-compatible Chat Completions provider.

Serves OpenAI itself and the local servers that speak the same protocol
(Ollama, LM Studio).  Streaming deltas are translated into message-stream
events and folded by the shared :class:`StreamAccumulator`, so tool-call
argument fragments are buffered per index exactly like the Anthropic path.
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
    default_error_mapper,
    extract_error_message,
)
from tether.core.errors import AIError, UnavailabilityReason
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
from tether.streaming.accumulator import MAX_BLOCK_INDEX, StreamAccumulator, map_stop_reason
from tether.streaming.sse import aiter_sse

logger = logging.getLogger("tether.adapters.openai")

OPENAI_BASE_URL = "https://api.openai.com"
COMPLETIONS_PATH = "/v1/chat/completions"

_HTTP2_AVAILABLE = importlib.util.find_spec("h2") is not None

FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def map_openai_error(status: int, payload: dict[str, Any] | None, text: str) -> AIError:
    err = (payload or {}).get("error")
    code = err.get("code") if isinstance(err, dict) else None
    message = extract_error_message(payload, text) or f"HTTP {status}"
    if code == "invalid_api_key":
        return AIError.authentication_failed(message)
    if code == "insufficient_quota":
        return AIError.billing(message)
    if code in ("model_not_found", "context_length_exceeded"):
        return AIError.invalid_input(message)
    return default_error_mapper(status, payload, text)


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

def _content(content: str | tuple[Any, ...]) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return content
    parts: list[dict[str, Any]] = []
    for part in content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"},
            })
        elif isinstance(part, AudioPart):
            parts.append({
                "type": "input_audio",
                "input_audio": {"data": part.data, "format": part.format},
            })
    return parts


def _to_openai_message(msg: Message) -> dict[str, Any]:
    if msg.role == Role.TOOL:
        return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.text_value}
    if msg.role == Role.ASSISTANT and msg.tool_calls:
        return {
            "role": "assistant",
            "content": msg.text_value or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": call.arguments_json or "{}"},
                }
                for call in msg.tool_calls
            ],
        }
    return {"role": msg.role.value, "content": _content(msg.content)}


def build_request_body(
    messages: list[Message],
    model: str,
    config: GenerateConfig,
    *,
    stream: bool = False,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": [_to_openai_message(m) for m in messages],
        "temperature": config.temperature,
        "top_p": config.top_p,
    }
    if config.max_tokens is not None:
        body["max_tokens"] = config.max_tokens
    if config.frequency_penalty:
        body["frequency_penalty"] = config.frequency_penalty
    if config.presence_penalty:
        body["presence_penalty"] = config.presence_penalty
    if config.stop_sequences:
        body["stop"] = list(config.stop_sequences)
    if config.seed is not None:
        body["seed"] = config.seed
    if config.return_logprobs:
        body["logprobs"] = True
        if config.top_logprobs is not None:
            body["top_logprobs"] = config.top_logprobs
    if config.user_id:
        body["user"] = config.user_id
    if config.service_tier:
        body["service_tier"] = config.service_tier

    choice = config.tool_choice
    if config.tools and choice.mode != "none":
        body["tools"] = [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
            }
            for t in config.tools
        ]
        if choice.mode == "tool":
            body["tool_choice"] = {"type": "function", "function": {"name": choice.name}}
        else:
            body["tool_choice"] = choice.mode

    if stream:
        body["stream"] = True
        body["stream_options"] = {"include_usage": True}
    return body


# ---------------------------------------------------------------------------
# Response normalisation
# ---------------------------------------------------------------------------

def _usage(data: dict[str, Any] | None) -> UsageStats:
    data = data or {}
    details = data.get("prompt_tokens_details") or {}
    return UsageStats(
        prompt_tokens=data.get("prompt_tokens", 0) or 0,
        completion_tokens=data.get("completion_tokens", 0) or 0,
        cache_read_tokens=details.get("cached_tokens", 0) or 0,
    )


def parse_response(
    data: dict[str, Any],
    *,
    rate_limit_info: RateLimitInfo | None = None,
    elapsed: float = 0.0,
) -> GenerationResult:
    choices = data.get("choices") or []
    if not choices:
        raise AIError.generation("API returned no choices")
    choice = choices[0]
    msg = choice.get("message") or {}

    tool_calls = tuple(
        ToolCall(
            id=tc.get("id") or f"call_{i}",
            tool_name=(tc.get("function") or {}).get("name", ""),
            arguments_json=(tc.get("function") or {}).get("arguments") or "{}",
        )
        for i, tc in enumerate(msg.get("tool_calls") or [])
    )
    finish_reason = map_stop_reason(choice.get("finish_reason"), FINISH_REASONS)
    # Some local servers report "stop" alongside tool calls
    if tool_calls and finish_reason == FinishReason.STOP:
        finish_reason = FinishReason.TOOL_CALLS
    if finish_reason == FinishReason.TOOL_CALLS and not tool_calls:
        raise AIError.generation("finish_reason is tool_calls but the response has no tool calls")
    if finish_reason != FinishReason.TOOL_CALLS:
        tool_calls = ()

    usage = _usage(data.get("usage"))
    return GenerationResult(
        text=msg.get("content") or "",
        token_count=usage.completion_tokens,
        finish_reason=finish_reason,
        usage=usage,
        tool_calls=tool_calls,
        rate_limit_info=rate_limit_info,
        generation_time=elapsed,
        tokens_per_second=usage.completion_tokens / elapsed if elapsed > 0 else 0.0,
    )


class _DeltaTranslator:
    """Turns Chat Completions stream chunks into message-stream events."""

    def __init__(self) -> None:
        self._open_tools: set[int] = set()
        self._finish_reason: str | None = None
        self._usage: dict[str, Any] | None = None

    def translate(self, chunk: dict[str, Any]) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        choice = (chunk.get("choices") or [{}])[0]
        delta = choice.get("delta") or {}

        if delta.get("content"):
            events.append({
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "text_delta", "text": delta["content"]},
            })

        for tc in delta.get("tool_calls") or []:
            # Block 0 is the text block; tool call i lives at block i + 1.
            index = (tc.get("index") or 0) + 1
            fn = tc.get("function") or {}
            if index not in self._open_tools and index <= MAX_BLOCK_INDEX:
                self._open_tools.add(index)
                events.append({
                    "type": "content_block_start",
                    "index": index,
                    "content_block": {
                        "type": "tool_use",
                        "id": tc.get("id") or f"call_{index - 1}",
                        "name": fn.get("name", ""),
                    },
                })
            if fn.get("arguments"):
                events.append({
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": fn["arguments"]},
                })

        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]
        if chunk.get("usage"):
            self._usage = chunk["usage"]
        return events

    def closing_events(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = [
            {"type": "content_block_stop", "index": i} for i in sorted(self._open_tools)
        ]
        reason = self._finish_reason
        if self._open_tools and reason in (None, "stop"):
            reason = "tool_calls"
        usage = _usage(self._usage)
        events.append({
            "type": "message_delta",
            "delta": {"stop_reason": reason},
            "usage": {"input_tokens": usage.prompt_tokens, "output_tokens": usage.completion_tokens},
        })
        events.append({"type": "message_stop"})
        return events


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class OpenAIProvider(BaseProvider):
    """OpenAI Chat Completions, or any server that speaks the same protocol."""

    name = "openai"

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = "",
        requires_api_key: bool = True,
        retry: RetryConfig | None = None,
        timeout: float = 180.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str | None = None,
    ) -> None:
        super().__init__()
        if name:
            self.name = name
        self._api_key = api_key
        self._requires_api_key = requires_api_key
        base_url = base_url or OPENAI_BASE_URL
        # Local servers stay on HTTP/1.1
        use_http2 = _HTTP2_AVAILABLE and base_url.startswith("https://")
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=build_timeout(timeout),
            limits=POOL_LIMITS,
            http2=use_http2,
        )
        if api_key:
            self._client.headers["Authorization"] = f"Bearer {api_key}"
        self._executor = RequestExecutor(self._client, retry, map_openai_error, sleep=sleep)
        self._connection_warmed = False

    @property
    def availability_status(self) -> ProviderAvailability:
        if self._requires_api_key and not self._api_key:
            return ProviderAvailability.unavailable(UnavailabilityReason.API_KEY_MISSING)
        return ProviderAvailability.ok()

    async def _generate(self, messages: list[Message], model: str, config: GenerateConfig) -> GenerationResult:
        body = build_request_body(messages, model, config)
        logger.debug("%s request: %d messages, model=%s", self.name, len(body["messages"]), model)
        started = time.monotonic()
        data, rate_limit_info = await self._executor.post_json(COMPLETIONS_PATH, body)
        return parse_response(
            data, rate_limit_info=rate_limit_info, elapsed=time.monotonic() - started,
        )

    async def _stream(
        self, messages: list[Message], model: str, config: GenerateConfig,
    ) -> AsyncIterator[GenerationChunk]:
        body = build_request_body(messages, model, config, stream=True)
        acc = StreamAccumulator(stop_reasons=FINISH_REASONS)
        translator = _DeltaTranslator()
        async with self._executor.open_stream(COMPLETIONS_PATH, body) as resp:
            acc.rate_limit_info = RateLimitInfo.from_headers(resp.headers)
            async for event in aiter_sse(aiter_response_lines(resp)):
                data = event.data.strip()
                if data == "[DONE]":
                    break
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping undecodable stream chunk: %.200s", data)
                    continue
                if not isinstance(payload, dict):
                    continue
                if payload.get("error"):
                    err = payload["error"]
                    message = err.get("message") if isinstance(err, dict) else str(err)
                    raise AIError.server_error(0, message)
                for translated in translator.translate(payload):
                    for chunk in acc.feed(translated):
                        yield chunk
        for translated in translator.closing_events():
            for chunk in acc.feed(translated):
                yield chunk

    async def warm_up(self, model: str | None = None) -> None:
        if self._connection_warmed:
            return
        try:
            await self._client.request("HEAD", COMPLETIONS_PATH, timeout=5.0)
        except httpx.HTTPError as exc:
            logger.debug("%s warm-up failed (ignored): %s", self.name, exc)
        self._connection_warmed = True

    async def close(self) -> None:
        await self._client.aclose()
