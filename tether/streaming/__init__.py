"""tether.streaming — server-sent-event framing and the stream state machine."""

from tether.streaming.accumulator import STOP_REASONS, StreamAccumulator, map_stop_reason
from tether.streaming.sse import ServerSentEvent, SSEParser, aiter_sse

__all__ = [
    "STOP_REASONS",
    "SSEParser",
    "ServerSentEvent",
    "StreamAccumulator",
    "aiter_sse",
    "map_stop_reason",
]
