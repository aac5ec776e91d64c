"""
tether.adapters.base — The provider contract.

Every backend, cloud or local, implements ``_generate`` and ``_stream``.
The public ``generate`` / ``stream`` wrappers add the shared behaviour:
input checks, availability checks, and cancellation via
``cancel_generation()``.

Cancellation: each provider call runs as a child task recorded in an
in-flight set.  ``cancel_generation()`` cancels exactly those tasks, and
the interrupted call surfaces ``AIError(kind=cancelled)``.  Calls started
after it returns are unaffected.  If the *caller's* task is cancelled
instead, ``asyncio.CancelledError`` propagates as usual.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Sequence, TypeVar

from tether.core.errors import AIError, UnavailabilityReason
from tether.core.models import GenerateConfig, GenerationChunk, GenerationResult, Message

logger = logging.getLogger("tether.adapters.base")

T = TypeVar("T")

_END = object()


async def _next_chunk(agen: AsyncIterator[GenerationChunk]) -> Any:
    try:
        return await agen.__anext__()
    except StopAsyncIteration:
        return _END


@dataclass(frozen=True)
class ProviderAvailability:
    available: bool
    reason: UnavailabilityReason | None = None

    @classmethod
    def ok(cls) -> "ProviderAvailability":
        return cls(available=True)

    @classmethod
    def unavailable(cls, reason: UnavailabilityReason) -> "ProviderAvailability":
        return cls(available=False, reason=reason)


class BaseProvider(ABC):
    """
    Interface contract for all providers.

    Subclasses implement ``_generate()`` and ``_stream()``; they may
    override ``availability_status``, ``warm_up()`` and ``close()``.
    Instances are safe to share between sessions: per-call state lives in
    the call, never on the provider.
    """

    name: str = "provider"

    def __init__(self) -> None:
        self._inflight: set[asyncio.Future[Any]] = set()
        self._cancel_requested: set[asyncio.Future[Any]] = set()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _generate(
        self, messages: list[Message], model: str, config: GenerateConfig,
    ) -> GenerationResult:
        ...

    @abstractmethod
    def _stream(
        self, messages: list[Message], model: str, config: GenerateConfig,
    ) -> AsyncIterator[GenerationChunk]:
        ...

    @property
    def availability_status(self) -> ProviderAvailability:
        """Cheap, offline check.  Never touches the network."""
        return ProviderAvailability.ok()

    @property
    def is_available(self) -> bool:
        return self.availability_status.available

    async def warm_up(self, model: str | None = None) -> None:
        """Best-effort connection warm-up.  Never raises."""

    async def close(self) -> None:
        """Release any held resources (HTTP clients, etc.)."""

    async def __aenter__(self) -> "BaseProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def generate(
        self,
        messages: Sequence[Message],
        model: str,
        config: GenerateConfig | None = None,
    ) -> GenerationResult:
        """Run one complete generation."""
        self._check_ready(messages)
        return await self._run_cancellable(
            self._generate(list(messages), model, config or GenerateConfig())
        )

    async def stream(
        self,
        messages: Sequence[Message],
        model: str,
        config: GenerateConfig | None = None,
    ) -> AsyncIterator[GenerationChunk]:
        """
        Stream one generation.  The sequence is finite and ends with a
        chunk whose ``is_complete`` is true and which carries the finish
        reason.  It cannot be restarted.
        """
        self._check_ready(messages)
        agen = self._stream(list(messages), model, config or GenerateConfig())
        try:
            while True:
                chunk = await self._run_cancellable(_next_chunk(agen))
                if chunk is _END:
                    return
                yield chunk
                if chunk.is_complete:
                    return
        finally:
            await agen.aclose()

    async def cancel_generation(self) -> None:
        """
        Stop every in-flight call on this instance.  Idempotent and
        non-blocking: it only signals, it does not wait for the calls to
        unwind.
        """
        pending = [t for t in self._inflight if not t.done()]
        if pending:
            logger.info("%s: cancelling %d in-flight call(s)", self.name, len(pending))
        for task in pending:
            self._cancel_requested.add(task)
            task.cancel()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_ready(self, messages: Sequence[Message]) -> None:
        if not messages:
            raise AIError.invalid_input("Messages cannot be empty")
        status = self.availability_status
        if not status.available:
            raise AIError.provider_unavailable(status.reason or UnavailabilityReason.UNKNOWN)

    async def _run_cancellable(self, aw: Awaitable[T]) -> T:
        task = asyncio.ensure_future(aw)
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 0
            if task in self._cancel_requested and not caller_cancelled:
                raise AIError.cancelled() from None
            # Let the child unwind so a stream's generator can be closed after
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            self._inflight.discard(task)
            self._cancel_requested.discard(task)
