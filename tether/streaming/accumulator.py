"""
tether.streaming.accumulator — Streaming event state machine.

Consumes decoded message-stream events in order::

    message_start
      (content_block_start  content_block_delta*  content_block_stop)*
    message_delta?
    message_stop

plus out-of-band ``error`` and ``ping``.  Text deltas are surfaced as
chunks immediately.  Tool-argument JSON is buffered per block ``index`` and
only parsed on that block's ``content_block_stop``, because individual
fragments are not valid JSON on their own.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from tether.core import json_repair
from tether.core.errors import AIError
from tether.core.models import (
    FinishReason,
    GenerationChunk,
    GenerationResult,
    RateLimitInfo,
    ToolCall,
    UsageStats,
)

logger = logging.getLogger("tether.streaming.accumulator")

MAX_TOOL_ARGUMENTS_CHARS = 100_000
MAX_BLOCK_INDEX = 100

STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_TOKENS,
    "stop_sequence": FinishReason.STOP_SEQUENCE,
    "tool_use": FinishReason.TOOL_CALLS,
    "pause_turn": FinishReason.PAUSE_TURN,
    "refusal": FinishReason.CONTENT_FILTER,
    "model_context_window_exceeded": FinishReason.MODEL_CONTEXT_WINDOW_EXCEEDED,
}


def map_stop_reason(reason: str | None, table: Mapping[str, FinishReason] = STOP_REASONS) -> FinishReason:
    """Unknown or missing stop reasons are treated as a plain stop."""
    if reason is None:
        return FinishReason.STOP
    return table.get(reason, FinishReason.STOP)


@dataclass
class _Block:
    kind: str                       # "text" | "tool_use" | anything else (ignored)
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    json_buffer: str = ""
    truncated: bool = False


@dataclass
class StreamAccumulator:
    """
    Folds one streamed response into chunks and, at the end, a result.

    ``feed()`` returns the chunks an event produces (usually zero or one).
    The terminal chunk is produced by ``message_stop``, or by ``finish()``
    when the transport ends without one.
    """
    stop_reasons: Mapping[str, FinishReason] = field(default_factory=lambda: STOP_REASONS)
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self._blocks: dict[int, _Block] = {}
        self._completed: dict[int, ToolCall] = {}
        self._stop_reason: str | None = None
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._cache_read_tokens = 0
        self._delta_count = 0
        self._started_at = self.clock()
        self._finished = False
        self.model: str | None = None
        self.message_id: str | None = None
        self.rate_limit_info: RateLimitInfo | None = None

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    @property
    def is_finished(self) -> bool:
        return self._finished

    def feed(self, event: Mapping[str, Any]) -> list[GenerationChunk]:
        if self._finished:
            return []
        event_type = event.get("type", "")

        if event_type == "message_start":
            self._on_message_start(event)
        elif event_type == "content_block_start":
            self._on_block_start(event)
        elif event_type == "content_block_delta":
            chunk = self._on_block_delta(event)
            return [chunk] if chunk is not None else []
        elif event_type == "content_block_stop":
            self._on_block_stop(event)
        elif event_type == "message_delta":
            self._on_message_delta(event)
        elif event_type == "message_stop":
            return [self._terminal()]
        elif event_type == "error":
            err = event.get("error") or {}
            raise AIError.server_error(
                0, f"[{err.get('type', 'unknown')}] {err.get('message', '')}"
            )
        # ping and unknown event types are ignored
        return []

    def feed_json(self, data: str) -> list[GenerationChunk]:
        """Decode one ``data:`` payload and feed it.  Undecodable payloads are skipped."""
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable stream event: %.200s", data)
            return []
        if not isinstance(event, dict):
            return []
        return self.feed(event)

    def finish(self) -> GenerationChunk | None:
        """Terminal chunk for a stream that ended without ``message_stop``."""
        if self._finished:
            return None
        return self._terminal()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_message_start(self, event: Mapping[str, Any]) -> None:
        message = event.get("message") or {}
        self.message_id = message.get("id")
        self.model = message.get("model")
        usage = message.get("usage") or {}
        self._prompt_tokens = usage.get("input_tokens", 0) or 0
        self._cache_read_tokens = usage.get("cache_read_input_tokens", 0) or 0
        self._completion_tokens = usage.get("output_tokens", 0) or 0

    def _on_block_start(self, event: Mapping[str, Any]) -> None:
        index = event.get("index", 0)
        block = event.get("content_block") or {}
        kind = block.get("type", "")
        if not isinstance(index, int) or not 0 <= index <= MAX_BLOCK_INDEX:
            logger.warning(
                "Skipping content block %r with invalid index %r (must be 0..%d)",
                kind, index, MAX_BLOCK_INDEX,
            )
            return
        if kind == "tool_use":
            self._blocks[index] = _Block(
                kind=kind,
                tool_id=block.get("id", f"call_{index}"),
                tool_name=block.get("name", ""),
            )
        else:
            self._blocks[index] = _Block(kind=kind, text=block.get("text", "") or "")

    def _on_block_delta(self, event: Mapping[str, Any]) -> GenerationChunk | None:
        index = event.get("index", 0)
        delta = event.get("delta") or {}
        delta_type = delta.get("type")
        block = self._blocks.get(index)

        if delta_type == "text_delta":
            text = delta.get("text", "")
            if block is None:
                if not isinstance(index, int) or not 0 <= index <= MAX_BLOCK_INDEX:
                    return None
                # Providers that skip content_block_start for text
                block = self._blocks.setdefault(index, _Block(kind="text"))
            if block.kind != "text" or not text:
                return None
            block.text += text
            self._delta_count += 1
            elapsed = self.clock() - self._started_at
            return GenerationChunk(
                text=text,
                token_count=1,
                tokens_per_second=self._delta_count / elapsed if elapsed > 0 else None,
            )

        if delta_type == "input_json_delta":
            if block is None or block.kind != "tool_use":
                return None
            partial = delta.get("partial_json", "") or ""
            room = MAX_TOOL_ARGUMENTS_CHARS - len(block.json_buffer)
            if len(partial) > room:
                if not block.truncated:
                    logger.warning(
                        "Tool call %r arguments exceeded %d chars, truncating",
                        block.tool_name, MAX_TOOL_ARGUMENTS_CHARS,
                    )
                block.truncated = True
                partial = partial[: max(0, room)]
            block.json_buffer += partial
        return None

    def _on_block_stop(self, event: Mapping[str, Any]) -> None:
        index = event.get("index", 0)
        block = self._blocks.get(index)
        if block is None or block.kind != "tool_use" or index in self._completed:
            return
        self._completed[index] = self._finalize_tool(block)

    def _on_message_delta(self, event: Mapping[str, Any]) -> None:
        delta = event.get("delta") or {}
        if delta.get("stop_reason") is not None:
            self._stop_reason = delta["stop_reason"]
        usage = event.get("usage") or {}
        if "output_tokens" in usage:
            self._completion_tokens = usage["output_tokens"] or 0
        if usage.get("input_tokens"):
            self._prompt_tokens = usage["input_tokens"]

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------

    @staticmethod
    def _finalize_tool(block: _Block) -> ToolCall:
        raw = block.json_buffer or "{}"
        try:
            json.loads(raw)
            arguments_json = raw
        except json.JSONDecodeError as exc:
            repaired = json_repair.repair(raw)
            try:
                json.loads(repaired)
            except json.JSONDecodeError:
                logger.warning("Failed to parse arguments for tool call %r: %s", block.tool_name, exc)
                logger.debug("Malformed JSON buffer: %.500s", raw)
                raise AIError.generation(
                    f"Malformed arguments for tool call '{block.tool_name}' ({block.tool_id}): {exc}"
                ) from exc
            logger.info("Recovered tool call %r via JSON repair", block.tool_name)
            arguments_json = repaired
        return ToolCall(id=block.tool_id, tool_name=block.tool_name, arguments_json=arguments_json)

    def _terminal(self) -> GenerationChunk:
        # Blocks the transport never closed are finalised here.
        for index, block in sorted(self._blocks.items()):
            if block.kind == "tool_use" and index not in self._completed:
                self._completed[index] = self._finalize_tool(block)
        self._finished = True
        finish_reason = self.finish_reason
        return GenerationChunk.completion(
            finish_reason,
            usage=self.usage,
            tool_calls=self.tool_calls if finish_reason == FinishReason.TOOL_CALLS else (),
            tokens_per_second=self.tokens_per_second,
        )

    # ------------------------------------------------------------------
    # Accumulated state
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        return "".join(b.text for _, b in sorted(self._blocks.items()) if b.kind == "text")

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return tuple(call for _, call in sorted(self._completed.items()))

    @property
    def finish_reason(self) -> FinishReason:
        return map_stop_reason(self._stop_reason, self.stop_reasons)

    @property
    def usage(self) -> UsageStats:
        return UsageStats(
            prompt_tokens=self._prompt_tokens,
            completion_tokens=self._completion_tokens,
            cache_read_tokens=self._cache_read_tokens,
        )

    @property
    def elapsed(self) -> float:
        return max(0.0, self.clock() - self._started_at)

    @property
    def tokens_per_second(self) -> float:
        elapsed = self.elapsed
        tokens = self._completion_tokens or self._delta_count
        return tokens / elapsed if elapsed > 0 else 0.0

    def result(self) -> GenerationResult:
        """Fold everything consumed so far into a :class:`GenerationResult`."""
        finish_reason = self.finish_reason
        tool_calls = self.tool_calls if finish_reason == FinishReason.TOOL_CALLS else ()
        if finish_reason == FinishReason.TOOL_CALLS and not tool_calls:
            raise AIError.generation("Stream ended with tool_use but no complete tool calls")
        return GenerationResult(
            text=self.text,
            token_count=self._completion_tokens or self._delta_count,
            finish_reason=finish_reason,
            usage=self.usage,
            tool_calls=tool_calls,
            rate_limit_info=self.rate_limit_info,
            generation_time=self.elapsed,
            tokens_per_second=self.tokens_per_second,
        )
