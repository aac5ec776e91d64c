"""
tether.streaming.sse — Minimal text/event-stream framing.

Feed decoded lines (as yielded by ``httpx.Response.aiter_lines``) and get
back complete events.  Handles ``event:``, multi-line ``data:``, ``id:``,
``retry:`` and comment lines; an event is dispatched on a blank line.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator


@dataclass(frozen=True)
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None

    def json(self) -> Any:
        return json.loads(self.data)


class SSEParser:
    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id: str | None = None
        self._retry: int | None = None

    def feed_line(self, line: str) -> list[ServerSentEvent]:
        line = line.rstrip("\r\n")
        if not line:
            event = self._dispatch()
            return [event] if event is not None else []
        if line.startswith(":"):
            return []

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        return []

    def flush(self) -> list[ServerSentEvent]:
        """Dispatch whatever is pending at end of stream."""
        event = self._dispatch()
        return [event] if event is not None else []

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data and not self._event:
            return None
        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        self._retry = None
        return event


async def aiter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Adapt an async line iterator into server-sent events."""
    parser = SSEParser()
    async for line in lines:
        for event in parser.feed_line(line):
            yield event
    for event in parser.flush():
        yield event
