"""
tether.agent.chat — The conversation loop.

A :class:`ChatSession` owns one transcript and drives it:

  1. Append the user message
  2. Ask the provider for a reply (with the executor's tool definitions)
  3. If the reply finished with tool calls → run them, append one tool
     message per call, goto 2
  4. Otherwise append the reply and return its text

A turn is all-or-nothing.  Any failure (provider error, tool error, the
round limit, cancellation) truncates the transcript back to where it was
before ``send()`` and re-raises the original error, so callers never see a
half-finished turn.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from tether.adapters.base import BaseProvider
from tether.agent.executor import RetryPolicy, ToolExecutor
from tether.agent.usage import UsageTracker
from tether.core.errors import AIError
from tether.core.models import (
    FinishReason,
    GenerateConfig,
    GenerationResult,
    Message,
    Role,
)

logger = logging.getLogger("tether.agent.chat")

DEFAULT_MAX_TOOL_CALL_ROUNDS = 8


@dataclass(frozen=True)
class WarmupConfig:
    """Optional warm-up performed by :meth:`ChatSession.create`."""
    warmup_on_init: bool = False
    prefill_chars: int = 50
    warmup_tokens: int = 5

    @classmethod
    def default(cls) -> "WarmupConfig":
        return cls()

    @classmethod
    def eager(cls) -> "WarmupConfig":
        return cls(warmup_on_init=True)


class ChatSession:
    """
    Stateful conversation against one provider and model.

    A session is single-writer: one ``send()`` (or ``stream()``) at a time.
    A second call while a turn is in flight is rejected with
    ``AIError(invalid_input)`` and leaves the transcript untouched.
    """

    def __init__(
        self,
        provider: BaseProvider,
        model: str,
        config: GenerateConfig | None = None,
        *,
        tool_executor: ToolExecutor | None = None,
        tool_retry_policy: RetryPolicy | None = None,
        max_tool_call_rounds: int = DEFAULT_MAX_TOOL_CALL_ROUNDS,
    ) -> None:
        self.provider = provider
        self.model = model
        self.config = config or GenerateConfig()
        self.tool_executor = tool_executor
        self.tool_retry_policy = tool_retry_policy or RetryPolicy.none()
        self.max_tool_call_rounds = max_tool_call_rounds
        self.usage = UsageTracker(model=model)

        self._messages: list[Message] = []
        self._generating = False
        self._last_error: BaseException | None = None
        self._cancel_requested = False
        self._turn_task: asyncio.Future[str] | None = None

    @classmethod
    async def create(
        cls,
        provider: BaseProvider,
        model: str,
        config: GenerateConfig | None = None,
        *,
        warmup: WarmupConfig | None = None,
        **kwargs,
    ) -> "ChatSession":
        """Build a session, optionally warming the provider up first.

        The warm-up runs a throwaway generation of ``warmup_tokens`` tokens
        over ``prefill_chars`` characters of filler; its failure propagates.
        """
        warmup = warmup or WarmupConfig.default()
        if warmup.warmup_on_init:
            await provider.warm_up(model)
            chars = max(1, warmup.prefill_chars)
            filler = ("Hi! " * (chars // 4 + 1))[:chars]
            logger.debug("Warming up %s/%s (%d chars)", provider.name, model, len(filler))
            await provider.generate(
                [Message.user(filler)],
                model,
                GenerateConfig(max_tokens=max(1, warmup.warmup_tokens), temperature=0.0),
            )
        return cls(provider, model, config, **kwargs)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def is_generating(self) -> bool:
        return self._generating

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self._messages if m.role == Role.USER)

    @property
    def has_system_prompt(self) -> bool:
        return bool(self._messages) and self._messages[0].role == Role.SYSTEM

    @property
    def system_prompt(self) -> str | None:
        if not self.has_system_prompt:
            return None
        return self._messages[0].text_value

    # ------------------------------------------------------------------
    # History management
    # ------------------------------------------------------------------

    def set_system_prompt(self, prompt: str) -> None:
        """Replace the leading system message, or insert one."""
        self._require_idle()
        message = Message.system(prompt)
        if self.has_system_prompt:
            self._messages[0] = message
        else:
            self._messages.insert(0, message)

    def clear_history(self) -> None:
        """Drop every message except the system prompt."""
        self._require_idle()
        self._messages = self._messages[:1] if self.has_system_prompt else []

    def undo_last_exchange(self) -> None:
        """
        Remove the last turn: the final user message and everything after
        it, including any tool rounds.
        """
        self._require_idle()
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == Role.USER:
                del self._messages[index:]
                return

    def inject_history(self, history: Sequence[Message]) -> None:
        """
        Replace the transcript with ``history``.

        An existing system prompt is kept; otherwise the first system
        message of ``history`` is used.  Any other system messages in
        ``history`` are dropped.
        """
        self._require_idle()
        existing = self._messages[0] if self.has_system_prompt else None
        injected = next((m for m in history if m.role == Role.SYSTEM), None)
        rest = [m for m in history if m.role != Role.SYSTEM]
        prompt = existing or injected
        self._messages = ([prompt] if prompt else []) + rest

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(self, text: str) -> str:
        """
        Run one full turn and return the final assistant text.

        Raises whatever aborted the turn, unchanged, after rolling the
        transcript back.  A turn stopped by :meth:`cancel` raises
        ``AIError(kind=cancelled)``.
        """
        checkpoint = self._begin_turn(text)
        task = asyncio.ensure_future(self._run_turn())
        self._turn_task = task
        try:
            reply = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancel_requested and not (current is not None and current.cancelling()):
                error = AIError.cancelled()
                self._rollback(checkpoint, error)
                raise error from None
            # Our own caller is being cancelled: stop the turn and let it propagate
            task.cancel()
            self._rollback(checkpoint, AIError.cancelled())
            raise
        except Exception as exc:
            self._rollback(checkpoint, exc)
            raise
        finally:
            self._turn_task = None
        self._finish_turn()
        return reply

    async def stream(self, text: str) -> AsyncIterator[str]:
        """
        Stream a single-round reply, yielding text deltas.

        The reply is committed only once the stream completes.  An error,
        a cancellation, or the consumer stopping early rolls the transcript
        back.  Tool definitions are not injected here; a reply that finishes
        with tool calls fails with ``AIError(invalid_input)``.
        """
        checkpoint = self._begin_turn(text)
        committed = False
        try:
            pieces: list[str] = []
            final = None
            async with aclosing(self.provider.stream(list(self._messages), self.model, self.config)) as chunks:
                async for chunk in chunks:
                    self._raise_if_cancelled()
                    if chunk.text:
                        pieces.append(chunk.text)
                        yield chunk.text
                    if chunk.is_complete:
                        final = chunk
            self._raise_if_cancelled()
            if final is not None and final.finish_reason == FinishReason.TOOL_CALLS:
                raise AIError.invalid_input("Streaming replies cannot run tool calls; use send() instead.")
            if final is not None:
                self.usage.add_usage(final.usage, self.model)
            self._messages.append(
                Message.assistant(
                    "".join(pieces),
                    model=self.model,
                    tokens_per_second=final.tokens_per_second if final else None,
                )
            )
            committed = True
            self._finish_turn()
        except asyncio.CancelledError:
            self._rollback(checkpoint, AIError.cancelled())
            raise
        except Exception as exc:
            self._rollback(checkpoint, exc)
            raise
        finally:
            if not committed and self._generating:
                logger.debug("Stream closed before completion; rolling back")
                self._rollback(checkpoint, None)

    async def cancel(self) -> None:
        """
        Stop the in-flight turn, if any.  Idempotent; a no-op when idle, so
        other sessions sharing the provider are never touched by it.  The
        interrupted ``send()`` rolls back and raises ``AIError(kind=cancelled)``.
        """
        if not self._generating:
            return
        self._cancel_requested = True
        task = self._turn_task
        if task is None:
            # A streamed turn has no task of its own
            await self.provider.cancel_generation()
        elif not task.done():
            logger.info("Cancelling in-flight turn")
            task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin_turn(self, text: str) -> int:
        if self._generating:
            raise AIError.invalid_input("ChatSession is already generating; wait for the current turn to finish.")
        self._generating = True
        self._cancel_requested = False
        self._last_error = None
        checkpoint = len(self._messages)
        self._messages.append(Message.user(text))
        return checkpoint

    def _finish_turn(self) -> None:
        self._generating = False
        self._cancel_requested = False

    def _rollback(self, checkpoint: int, error: BaseException | None) -> None:
        if not self._generating:
            return
        del self._messages[checkpoint:]
        if error is not None:
            self._last_error = error
            logger.info("Turn rolled back to %d message(s): %r", checkpoint, error)
        self._generating = False
        self._cancel_requested = False

    def _require_idle(self) -> None:
        if self._generating:
            raise AIError.invalid_input("Cannot edit history while a turn is in flight.")

    def _raise_if_cancelled(self) -> None:
        if self._cancel_requested:
            raise AIError.cancelled()

    def _effective_config(self) -> GenerateConfig:
        if self.tool_executor is not None and not self.config.tools and len(self.tool_executor):
            return self.config.with_tools(self.tool_executor.tool_definitions)
        return self.config

    async def _run_turn(self) -> str:
        config = self._effective_config()
        max_rounds = max(0, self.max_tool_call_rounds)
        rounds = 0

        while True:
            self._raise_if_cancelled()
            result = await self.provider.generate(list(self._messages), self.model, config)
            self._raise_if_cancelled()
            self.usage.add_usage(result.usage, self.model)

            self._messages.append(self._assistant_message(result))
            if result.finish_reason != FinishReason.TOOL_CALLS:
                return result.text

            rounds += 1
            if rounds > max_rounds:
                raise AIError.invalid_input(
                    f"Tool-call loop exceeded max_tool_call_rounds ({max_rounds})."
                )
            if self.tool_executor is None:
                raise AIError.invalid_input(
                    "Tool calls were requested but the session has no tool executor."
                )

            logger.info(
                "Tool round %d: %s",
                rounds, ", ".join(call.tool_name for call in result.tool_calls),
            )
            outputs = await self.tool_executor.execute_all(
                result.tool_calls,
                self.tool_retry_policy,
                should_cancel=lambda: self._cancel_requested,
            )
            self._raise_if_cancelled()
            self._messages.extend(Message.tool_output(output) for output in outputs)

    def _assistant_message(self, result: GenerationResult) -> Message:
        return Message.assistant(
            result.text,
            tool_calls=result.tool_calls,
            model=self.model,
            token_count=result.token_count,
            generation_time=result.generation_time,
            tokens_per_second=result.tokens_per_second,
        )

    def __repr__(self) -> str:
        return (
            f"<ChatSession {self.provider.name}/{self.model} "
            f"messages={len(self._messages)} generating={self._generating}>"
        )
