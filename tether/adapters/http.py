"""
tether.adapters.http — Request execution layer shared by HTTP providers.

One logical call becomes 1..N HTTP attempts:

  - transport failures and timeouts are retried with backoff
    (by default ``base_delay * 2**attempt``, capped at ``max_delay``);
  - 429 waits for ``Retry-After`` (capped) when the header is present,
    otherwise backs off;
  - 5xx backs off;
  - any status outside ``retryable_status_codes`` is fatal and is mapped
    to the error taxonomy at once.

When attempts run out the last observed error is raised; an empty result
is never returned.  Retry state is local to one call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from tether.core.errors import AIError, ErrorKind
from tether.core.models import RateLimitInfo, parse_retry_after

logger = logging.getLogger("tether.adapters.http")

# ---------------------------------------------------------------------------
# Performance constants
# ---------------------------------------------------------------------------
_CONNECT_TIMEOUT = 10.0    # TCP + TLS handshake (seconds)
_READ_TIMEOUT = 180.0      # Streaming read (seconds)
_WRITE_TIMEOUT = 30.0      # Request body upload
_POOL_TIMEOUT = 10.0       # Waiting for a connection from the pool

# Connection pool limits: keep connections alive to skip TLS on later requests
POOL_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=120,  # seconds
)

_MAX_ERROR_BODY_CHARS = 10_000


def build_timeout(read: float = _READ_TIMEOUT) -> httpx.Timeout:
    """Granular timeouts: fast connect, generous read for streaming."""
    return httpx.Timeout(
        connect=_CONNECT_TIMEOUT,
        read=read,
        write=_WRITE_TIMEOUT,
        pool=_POOL_TIMEOUT,
    )


class RetryStrategy(StrEnum):
    """How the wait before each retry grows."""
    IMMEDIATE = "immediate"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


# 429 plus every 5xx
DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, *range(500, 600)})


@dataclass(frozen=True)
class RetryConfig:
    """
    Bounded retry policy for one logical request.

    ``backoff(attempt)`` is the wait after the ``attempt``-th failure
    (0-indexed), never more than ``max_delay``.  A server-supplied
    ``Retry-After`` is capped separately by ``max_retry_after``.
    """
    max_retries: int = 3
    base_delay: float = 1.0          # seconds
    max_delay: float = 30.0          # cap on computed backoff
    max_retry_after: float = 300.0   # cap on a server-supplied Retry-After
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    multiplier: float = 2.0
    jitter_factor: float = 0.1       # +/- fraction for EXPONENTIAL_JITTER
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        # The cap never undercuts the first delay
        if self.max_delay < self.base_delay:
            object.__setattr__(self, "max_delay", self.base_delay)
        object.__setattr__(self, "strategy", RetryStrategy(self.strategy))
        object.__setattr__(self, "retryable_status_codes", frozenset(self.retryable_status_codes))

    @classmethod
    def none(cls) -> "RetryConfig":
        return cls(max_retries=0)

    @classmethod
    def aggressive(cls) -> "RetryConfig":
        """More attempts with shorter, jittered delays."""
        return cls(max_retries=5, base_delay=0.5, max_delay=15.0, strategy=RetryStrategy.EXPONENTIAL_JITTER)

    @classmethod
    def conservative(cls) -> "RetryConfig":
        """Fewer attempts with longer delays."""
        return cls(max_retries=2, base_delay=2.0, max_delay=60.0)

    def backoff(self, attempt: int) -> float:
        if self.strategy == RetryStrategy.IMMEDIATE:
            delay = 0.0
        elif self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        else:
            delay = self.base_delay * (self.multiplier ** attempt)
            if self.strategy == RetryStrategy.EXPONENTIAL_JITTER:
                delay = max(0.0, delay + delay * self.jitter_factor * random.uniform(-1.0, 1.0))
        return min(delay, self.max_delay)

    def should_retry_status(self, status: int) -> bool:
        return status in self.retryable_status_codes


ErrorMapper = Callable[[int, "dict[str, Any] | None", str], AIError]


def decode_error_payload(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def extract_error_message(payload: dict[str, Any] | None, text: str) -> str | None:
    """Pull a human message out of the common ``{"error": {...}}`` shapes."""
    if payload:
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if payload.get("message"):
            return str(payload["message"])
    text = text.strip()
    return text[:500] if text else None


def default_error_mapper(status: int, payload: dict[str, Any] | None, text: str) -> AIError:
    """Status-code based mapping for backends without typed error bodies."""
    message = extract_error_message(payload, text) or f"HTTP {status}"
    if status in (401, 403):
        return AIError.authentication_failed(message)
    if status == 402:
        return AIError.billing(message)
    if status == 404:
        return AIError.model_not_found(message)
    if status == 408:
        return AIError.timed_out(message=message)
    if status in (400, 409, 413, 422):
        return AIError.invalid_input(message)
    return AIError.server_error(status, message)



class RequestExecutor:
    """
    Sends JSON POSTs through an ``httpx.AsyncClient`` under a
    :class:`RetryConfig`.

    ``sleep`` is injectable so tests can observe backoff without waiting.
    It is a cancellation point like any other await.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        retry: RetryConfig | None = None,
        error_mapper: ErrorMapper = default_error_mapper,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.retry = retry or RetryConfig()
        self._error_mapper = error_mapper
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def post_json(self, path: str, body: dict[str, Any]) -> tuple[dict[str, Any], RateLimitInfo]:
        """POST *body* and return the decoded JSON object plus rate-limit info."""
        content = json.dumps(body).encode("utf-8")
        resp = await self._send(path, content, stream=False)
        try:
            data = resp.json()
        except ValueError as exc:
            raise AIError.generation(f"Undecodable response body from {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise AIError.generation(f"Expected a JSON object from {path}, got {type(data).__name__}")
        return data, RateLimitInfo.from_headers(resp.headers)

    @asynccontextmanager
    async def open_stream(self, path: str, body: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        POST *body* and yield the open streaming response.

        Retries cover connecting and the response status only; once the body
        is flowing a failure is not retried.
        """
        content = json.dumps(body).encode("utf-8")
        resp = await self._send(path, content, stream=True)
        try:
            yield resp
        finally:
            await resp.aclose()

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    async def _send(self, path: str, content: bytes, *, stream: bool) -> httpx.Response:
        attempts = self.retry.max_retries + 1
        last_error: AIError | None = None

        for attempt in range(attempts):
            request = self._client.build_request(
                "POST", path, content=content, headers={"content-type": "application/json"},
            )
            try:
                resp = await self._client.send(request, stream=stream)
            except httpx.TimeoutException as exc:
                last_error = AIError(
                    ErrorKind.TIMEOUT,
                    f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                    timeout=self._client.timeout.read,
                    underlying=exc,
                )
                delay = self.retry.backoff(attempt)
            except httpx.TransportError as exc:
                last_error = AIError.network(exc)
                delay = self.retry.backoff(attempt)
            else:
                if resp.is_success:
                    return resp
                text = await self._read_error_body(resp, stream)
                last_error = self._failure_for_status(resp, text)
                if not self.retry.should_retry_status(resp.status_code):
                    logger.debug("POST %s failed with HTTP %d (not retryable)", path, resp.status_code)
                    raise last_error
                delay = self._delay_for(resp, attempt)

            if attempt + 1 >= attempts:
                break
            logger.warning(
                "POST %s failed: %s (attempt %d/%d) — retrying in %.1fs…",
                path, last_error.description, attempt + 1, attempts, delay,
            )
            await self._sleep(delay)

        assert last_error is not None
        logger.warning("POST %s giving up after %d attempt(s): %s", path, attempts, last_error.description)
        raise last_error

    def _delay_for(self, resp: httpx.Response, attempt: int) -> float:
        if resp.status_code == 429:
            retry_after = parse_retry_after(resp.headers.get("retry-after"))
            if retry_after is not None:
                return min(retry_after, self.retry.max_retry_after)
        return self.retry.backoff(attempt)

    def _failure_for_status(self, resp: httpx.Response, text: str) -> AIError:
        payload = decode_error_payload(text)
        if resp.status_code == 429:
            return AIError.rate_limited(parse_retry_after(resp.headers.get("retry-after")))
        if resp.status_code >= 500:
            return AIError.server_error(resp.status_code, extract_error_message(payload, text))
        return self._error_mapper(resp.status_code, payload, text)

    @staticmethod
    async def _read_error_body(resp: httpx.Response, stream: bool) -> str:
        try:
            raw = await resp.aread()
        except httpx.HTTPError:
            raw = b""
        finally:
            if stream:
                await resp.aclose()
        return raw.decode("utf-8", errors="replace")[:_MAX_ERROR_BODY_CHARS]


async def aiter_response_lines(resp: httpx.Response) -> AsyncIterator[str]:
    """``resp.aiter_lines()`` with transport failures mapped to :class:`AIError`."""
    try:
        async for line in resp.aiter_lines():
            yield line
    except httpx.TimeoutException as exc:
        raise AIError(ErrorKind.TIMEOUT, f"stream stalled: {type(exc).__name__}", underlying=exc) from exc
    except httpx.TransportError as exc:
        raise AIError.network(exc) from exc
