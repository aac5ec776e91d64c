"""
Shared fakes for the tether test suite.

``ScriptedProvider`` replays queued results (or raises queued errors) and
records every call, so chat-session tests can assert on exactly what was
sent without touching the network.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest

from tether.adapters.base import BaseProvider
from tether.agent.tools import tool
from tether.core.errors import AIError
from tether.core.models import (
    FinishReason,
    GenerateConfig,
    GenerationChunk,
    GenerationResult,
    Message,
    ToolCall,
    UsageStats,
)


def text_result(text: str, *, usage: UsageStats | None = None) -> GenerationResult:
    return GenerationResult(text=text, finish_reason=FinishReason.STOP, usage=usage)


def tool_result(*calls: ToolCall, text: str = "") -> GenerationResult:
    return GenerationResult(text=text, finish_reason=FinishReason.TOOL_CALLS, tool_calls=calls)


class ScriptedProvider(BaseProvider):
    """Returns queued results in order.  A queued exception is raised instead."""

    name = "scripted"

    def __init__(self, *script: GenerationResult | BaseException, repeat_last: bool = False) -> None:
        super().__init__()
        self.script = list(script)
        self.repeat_last = repeat_last
        self.calls: list[tuple[list[Message], str, GenerateConfig]] = []
        self.stream_script: list[GenerationChunk | BaseException] = []
        self.block = asyncio.Event()
        self.blocking = False
        self.started = asyncio.Event()

    async def _generate(self, messages, model, config):
        self.calls.append((list(messages), model, config))
        self.started.set()
        if self.blocking:
            await self.block.wait()
        if not self.script:
            raise AssertionError("ScriptedProvider ran out of results")
        item = self.script[0] if (self.repeat_last and len(self.script) == 1) else self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def _stream(self, messages, model, config) -> AsyncIterator[GenerationChunk]:
        self.calls.append((list(messages), model, config))
        for item in self.stream_script:
            if isinstance(item, BaseException):
                raise item
            yield item


@pytest.fixture
def echo_tool():
    @tool
    def echo(input: str) -> str:
        """Echo the input back."""
        return f"Echo: {input}"

    return echo


class FlakyCounter:
    """Fails ``failures`` times with ``error`` and then returns ``value``."""

    def __init__(self, failures: int, error: BaseException | None = None, value: str = "ok") -> None:
        self.failures = failures
        self.error = error or AIError.timed_out(1.0)
        self.value = value
        self.invocations = 0

    def __call__(self) -> str:
        self.invocations += 1
        if self.invocations <= self.failures:
            raise self.error
        return self.value


@pytest.fixture
def flaky():
    return FlakyCounter
