"""Tests for the interactive chat loop in tether.cli."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from tether import cli
from tether.agent import renderer
from tether.core.models import FinishReason, GenerationChunk

from conftest import ScriptedProvider


class HangingStreamProvider(ScriptedProvider):
    """Streams one piece and then waits until cancelled."""

    async def _stream(self, messages, model, config):
        self.calls.append((list(messages), model, config))
        yield GenerationChunk(text="partial")
        self.started.set()
        await asyncio.Event().wait()
        yield GenerationChunk.completion(FinishReason.STOP)


def _scripted_inputs(lines, on_first=None):
    queue = list(lines)

    async def fake_input(turn: int) -> str:
        if on_first is not None and len(queue) == len(lines):
            on_first(asyncio.current_task())
        return queue.pop(0)

    return fake_input


@pytest.mark.asyncio
async def test_chat_interrupt_mid_stream_cancels_reply_and_keeps_repl(monkeypatch):
    provider = HangingStreamProvider()
    config = SimpleNamespace(
        provider="scripted",
        model="m",
        max_tool_call_rounds=8,
        create_provider=lambda: provider,
    )
    info: list[str] = []
    interrupts: list[asyncio.Task] = []

    def interrupt_when_streaming(main: asyncio.Task) -> None:
        async def interrupt() -> None:
            await provider.started.wait()
            main.cancel()

        interrupts.append(asyncio.ensure_future(interrupt()))

    monkeypatch.setattr(
        renderer, "get_input_with_completion",
        _scripted_inputs(["hello", "/exit"], on_first=interrupt_when_streaming),
    )
    monkeypatch.setattr(renderer, "render_info", info.append)

    await cli._chat(config, None)

    assert info == ["Cancelled"]
    assert interrupts[0].done()
    assert len(provider.calls) == 1
