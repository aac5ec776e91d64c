"""
tether.agent.executor — Resolves tool calls against a registry and runs them.

Per call: look the tool up by name, decode ``arguments_json`` into the
tool's argument shape, invoke the body, stringify the output and return a
:class:`ToolOutput` carrying the call's ``id``.

Retries are opt-in.  The default policy makes exactly one attempt; a
caller-supplied :class:`RetryPolicy` may retry retryable errors (or every
failure except cancellation) up to ``max_attempts`` in total.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Iterable, Sequence

from pydantic import ValidationError

from tether.agent.tools import FunctionTool, Tool, render_output
from tether.core.errors import AIError, is_cancellation, is_retryable_error
from tether.core.models import ToolCall, ToolDefinition, ToolOutput

logger = logging.getLogger("tether.agent.executor")

# Max output size to keep a runaway tool from exploding the context window
MAX_OUTPUT_CHARS = 30_000


class MissingToolPolicy(StrEnum):
    """What to do when a call names a tool that is not registered."""
    THROW_ERROR = "throw_error"
    EMIT_TOOL_OUTPUT = "emit_tool_output"


class RetryCondition(StrEnum):
    NEVER = "never"
    RETRYABLE_ERRORS = "retryable_errors"
    ALL_FAILURES_EXCEPT_CANCELLATION = "all_failures_except_cancellation"


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often a failing tool call may be attempted.

    ``max_attempts`` counts the first attempt, so ``max_attempts=1`` means
    no retry.  ``predicate(error, attempt)``, when given, replaces the
    condition; ``attempt`` is the number of attempts made so far.
    Cancellation is never retried.
    """
    max_attempts: int = 1
    condition: RetryCondition = RetryCondition.RETRYABLE_ERRORS
    predicate: Callable[[BaseException, int], bool] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(max_attempts=1, condition=RetryCondition.NEVER)

    @classmethod
    def retryable_errors(cls, max_attempts: int = 3) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, condition=RetryCondition.RETRYABLE_ERRORS)

    @classmethod
    def all_failures(cls, max_attempts: int = 3) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, condition=RetryCondition.ALL_FAILURES_EXCEPT_CANCELLATION)

    @classmethod
    def custom(cls, max_attempts: int, predicate: Callable[[BaseException, int], bool]) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, predicate=predicate)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts or is_cancellation(error):
            return False
        if self.predicate is not None:
            return self.predicate(error, attempt)
        if self.condition == RetryCondition.RETRYABLE_ERRORS:
            return is_retryable_error(error)
        return self.condition == RetryCondition.ALL_FAILURES_EXCEPT_CANCELLATION


class ToolExecutor:
    """
    Registry plus runner for tools.

    Register tools before a session starts driving calls; the registry is
    treated as read-only while calls execute.
    """

    def __init__(
        self,
        tools: Iterable[Tool | Callable[..., object]] = (),
        *,
        missing_tool_policy: MissingToolPolicy = MissingToolPolicy.THROW_ERROR,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self.missing_tool_policy = MissingToolPolicy(missing_tool_policy)
        self.register(*tools)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, *tools: Tool | Callable[..., object]) -> None:
        """Add tools; a tool with an existing name replaces the old one."""
        for t in tools:
            if not isinstance(t, Tool):
                t = FunctionTool(t)
            if not t.name:
                raise ValueError(f"{t!r} has no name")
            if t.name in self._tools:
                logger.debug("Replacing tool %r", t.name)
            self._tools[t.name] = t

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def registered_tool_names(self) -> list[str]:
        return sorted(self._tools)

    @property
    def tool_definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        call: ToolCall,
        retry_policy: RetryPolicy | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> ToolOutput:
        """
        Execute one call and return its output.

        Raises ``AIError(invalid_input)`` for an unknown tool (unless the
        missing-tool policy emits an output instead) or undecodable
        arguments.  A failure from the tool body propagates unchanged once
        the retry policy gives up.
        """
        policy = retry_policy or RetryPolicy.none()
        _check_cancelled(should_cancel)

        tool = self._tools.get(call.tool_name)
        if tool is None:
            if self.missing_tool_policy == MissingToolPolicy.EMIT_TOOL_OUTPUT:
                logger.warning("Tool not found: %s (emitting output)", call.tool_name)
                return ToolOutput(id=call.id, tool_name=call.tool_name, content=f"Tool not found: {call.tool_name}")
            raise AIError.invalid_input(f"Tool not found: {call.tool_name}")

        arguments = self._decode(tool, call)

        attempt = 0
        while True:
            _check_cancelled(should_cancel)
            attempt += 1
            start_time = time.monotonic()
            try:
                result = tool.call(arguments)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                if policy.should_retry(exc, attempt):
                    logger.warning(
                        "Tool %s failed (attempt %d/%d): %s — retrying",
                        call.tool_name, attempt, policy.max_attempts, exc,
                    )
                    continue
                logger.warning("Tool %s failed after %d attempt(s): %s", call.tool_name, attempt, exc)
                raise
            elapsed = time.monotonic() - start_time
            logger.debug("Tool %s (%s) finished in %.3fs", call.tool_name, call.id, elapsed)
            return ToolOutput(id=call.id, tool_name=call.tool_name, content=_truncate(render_output(result)))

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        retry_policy: RetryPolicy | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> list[ToolOutput]:
        """
        Execute every call of one round concurrently.

        Outputs come back in call order.  The first failure (in call order
        among those that failed) cancels the remaining calls and is raised
        unchanged.
        """
        if not calls:
            return []
        if len(calls) == 1:
            return [await self.execute(calls[0], retry_policy, should_cancel)]

        tasks = [
            asyncio.ensure_future(self.execute(call, retry_policy, should_cancel))
            for call in calls
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        return [task.result() for task in tasks]

    @staticmethod
    def _decode(tool: Tool, call: ToolCall) -> object:
        try:
            raw = json.loads(call.arguments_json) if call.arguments_json.strip() else {}
        except json.JSONDecodeError as exc:
            raise AIError.invalid_input(
                f"Invalid JSON arguments for tool '{call.tool_name}': {exc.msg} at position {exc.pos}"
            ) from exc
        if not isinstance(raw, dict):
            raise AIError.invalid_input(
                f"Arguments for tool '{call.tool_name}' must be a JSON object, got {type(raw).__name__}"
            )
        try:
            return tool.decode_arguments(raw)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            )
            raise AIError.invalid_input(
                f"Arguments for tool '{call.tool_name}' do not match its schema: {problems}"
            ) from exc


def _check_cancelled(should_cancel: Callable[[], bool] | None) -> None:
    if should_cancel is not None and should_cancel():
        raise AIError.cancelled()


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... (truncated, {len(text)} chars total)"
