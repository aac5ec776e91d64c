"""
tether.core.errors — The shared error taxonomy.

Every failure that crosses a public boundary is an :class:`AIError`.  One
exception class carries a closed ``kind`` tag plus the payload fields that
kind needs (status code, retry-after, counts, the underlying exception),
so callers branch on ``err.kind`` instead of on a class hierarchy.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Closed set of failure kinds."""
    # Provider
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MODEL_NOT_FOUND = "model_not_found"
    MODEL_NOT_CACHED = "model_not_cached"
    INCOMPATIBLE_MODEL = "incompatible_model"
    AUTHENTICATION_FAILED = "authentication_failed"
    BILLING_ERROR = "billing_error"
    # Generation
    GENERATION_FAILED = "generation_failed"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    CONTENT_FILTERED = "content_filtered"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    # Network
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    # Resource
    INSUFFICIENT_MEMORY = "insufficient_memory"
    DOWNLOAD_FAILED = "download_failed"
    FILE_ERROR = "file_error"
    # Input
    INVALID_INPUT = "invalid_input"
    UNSUPPORTED_AUDIO_FORMAT = "unsupported_audio_format"
    UNSUPPORTED_LANGUAGE = "unsupported_language"


class ErrorCategory(StrEnum):
    PROVIDER = "provider"
    GENERATION = "generation"
    NETWORK = "network"
    RESOURCE = "resource"
    INPUT = "input"

    @property
    def display_name(self) -> str:
        return f"{self.value.capitalize()} Error"


class UnavailabilityReason(StrEnum):
    """Why a provider reports itself unavailable."""
    DEVICE_NOT_SUPPORTED = "device_not_supported"
    MODEL_DOWNLOADING = "model_downloading"
    MODEL_NOT_DOWNLOADED = "model_not_downloaded"
    NO_NETWORK = "no_network"
    API_KEY_MISSING = "api_key_missing"
    INSUFFICIENT_MEMORY = "insufficient_memory"
    UNKNOWN = "unknown"


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.PROVIDER_UNAVAILABLE: ErrorCategory.PROVIDER,
    ErrorKind.MODEL_NOT_FOUND: ErrorCategory.PROVIDER,
    ErrorKind.MODEL_NOT_CACHED: ErrorCategory.PROVIDER,
    ErrorKind.INCOMPATIBLE_MODEL: ErrorCategory.PROVIDER,
    ErrorKind.AUTHENTICATION_FAILED: ErrorCategory.PROVIDER,
    ErrorKind.BILLING_ERROR: ErrorCategory.PROVIDER,
    ErrorKind.GENERATION_FAILED: ErrorCategory.GENERATION,
    ErrorKind.TOKEN_LIMIT_EXCEEDED: ErrorCategory.GENERATION,
    ErrorKind.CONTENT_FILTERED: ErrorCategory.GENERATION,
    ErrorKind.CANCELLED: ErrorCategory.GENERATION,
    ErrorKind.TIMEOUT: ErrorCategory.GENERATION,
    ErrorKind.NETWORK_ERROR: ErrorCategory.NETWORK,
    ErrorKind.SERVER_ERROR: ErrorCategory.NETWORK,
    ErrorKind.RATE_LIMITED: ErrorCategory.NETWORK,
    ErrorKind.INSUFFICIENT_MEMORY: ErrorCategory.RESOURCE,
    ErrorKind.DOWNLOAD_FAILED: ErrorCategory.RESOURCE,
    ErrorKind.FILE_ERROR: ErrorCategory.RESOURCE,
    ErrorKind.INVALID_INPUT: ErrorCategory.INPUT,
    ErrorKind.UNSUPPORTED_AUDIO_FORMAT: ErrorCategory.INPUT,
    ErrorKind.UNSUPPORTED_LANGUAGE: ErrorCategory.INPUT,
}

# Kinds that are always transient.  SERVER_ERROR and PROVIDER_UNAVAILABLE
# depend on their payload and are decided in ``AIError.is_retryable``.
_RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.RATE_LIMITED,
    ErrorKind.TIMEOUT,
    ErrorKind.GENERATION_FAILED,
    ErrorKind.DOWNLOAD_FAILED,
})

_RETRYABLE_REASONS = frozenset({
    UnavailabilityReason.MODEL_DOWNLOADING,
    UnavailabilityReason.NO_NETWORK,
})

_UNAVAILABLE_HINTS: dict[UnavailabilityReason, str] = {
    UnavailabilityReason.DEVICE_NOT_SUPPORTED: "This provider is not supported on this machine. Use a cloud provider instead.",
    UnavailabilityReason.MODEL_DOWNLOADING: "Wait for the download to complete.",
    UnavailabilityReason.MODEL_NOT_DOWNLOADED: "Download the model before using it.",
    UnavailabilityReason.NO_NETWORK: "Connect to the internet to use this cloud provider.",
    UnavailabilityReason.API_KEY_MISSING: "Configure your API key before using this provider.",
    UnavailabilityReason.INSUFFICIENT_MEMORY: "Free up memory or use a smaller model.",
}


class AIError(Exception):
    """
    A classified failure from a provider, the request layer, a tool or a
    chat session.

    Use the classmethod constructors (``AIError.timed_out(30)``,
    ``AIError.server_error(503, "overloaded")``, ...) rather than building
    one by hand; they fill in the payload each kind expects.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        timeout: float | None = None,
        reason: UnavailabilityReason | None = None,
        count: int | None = None,
        limit: int | None = None,
        underlying: BaseException | None = None,
    ) -> None:
        self.kind = ErrorKind(kind)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.timeout = timeout
        self.reason = reason
        self.count = count
        self.limit = limit
        self.underlying = underlying
        super().__init__(self.description)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def provider_unavailable(cls, reason: UnavailabilityReason = UnavailabilityReason.UNKNOWN) -> AIError:
        return cls(ErrorKind.PROVIDER_UNAVAILABLE, reason=UnavailabilityReason(reason))

    @classmethod
    def model_not_found(cls, model: str) -> AIError:
        return cls(ErrorKind.MODEL_NOT_FOUND, model)

    @classmethod
    def authentication_failed(cls, message: str) -> AIError:
        return cls(ErrorKind.AUTHENTICATION_FAILED, message)

    @classmethod
    def billing(cls, message: str) -> AIError:
        return cls(ErrorKind.BILLING_ERROR, message)

    @classmethod
    def generation(cls, error: BaseException | str) -> AIError:
        """Wrap an arbitrary failure (or a plain message) as generation_failed."""
        if isinstance(error, BaseException):
            return cls(ErrorKind.GENERATION_FAILED, str(error), underlying=error)
        return cls(ErrorKind.GENERATION_FAILED, error)

    @classmethod
    def token_limit_exceeded(cls, count: int, limit: int) -> AIError:
        return cls(ErrorKind.TOKEN_LIMIT_EXCEEDED, count=count, limit=limit)

    @classmethod
    def content_filtered(cls, reason: str | None = None) -> AIError:
        return cls(ErrorKind.CONTENT_FILTERED, reason)

    @classmethod
    def cancelled(cls) -> AIError:
        return cls(ErrorKind.CANCELLED)

    @classmethod
    def timed_out(cls, seconds: float | None = None, message: str | None = None) -> AIError:
        return cls(ErrorKind.TIMEOUT, message, timeout=seconds)

    @classmethod
    def network(cls, error: BaseException | str) -> AIError:
        if isinstance(error, BaseException):
            return cls(ErrorKind.NETWORK_ERROR, str(error) or type(error).__name__, underlying=error)
        return cls(ErrorKind.NETWORK_ERROR, error)

    @classmethod
    def server_error(cls, status_code: int, message: str | None = None) -> AIError:
        return cls(ErrorKind.SERVER_ERROR, message, status_code=status_code)

    @classmethod
    def rate_limited(cls, retry_after: float | None = None) -> AIError:
        return cls(ErrorKind.RATE_LIMITED, retry_after=retry_after, status_code=429)

    @classmethod
    def download(cls, error: BaseException) -> AIError:
        return cls(ErrorKind.DOWNLOAD_FAILED, str(error), underlying=error)

    @classmethod
    def file(cls, error: BaseException) -> AIError:
        return cls(ErrorKind.FILE_ERROR, str(error), underlying=error)

    @classmethod
    def invalid_input(cls, message: str) -> AIError:
        return cls(ErrorKind.INVALID_INPUT, message)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self.kind]

    @property
    def is_retryable(self) -> bool:
        """Whether the failure is transient and worth a bounded retry."""
        if self.kind in _RETRYABLE_KINDS:
            return True
        if self.kind == ErrorKind.SERVER_ERROR:
            return (self.status_code or 0) >= 500
        if self.kind == ErrorKind.PROVIDER_UNAVAILABLE:
            return self.reason in _RETRYABLE_REASONS
        return False

    @property
    def description(self) -> str:
        kind, msg = self.kind, self.message
        if kind == ErrorKind.PROVIDER_UNAVAILABLE:
            reason = (self.reason or UnavailabilityReason.UNKNOWN).value.replace("_", " ")
            return f"Provider unavailable: {reason}"
        if kind == ErrorKind.TOKEN_LIMIT_EXCEEDED:
            return f"Token limit exceeded: {self.count} tokens (limit: {self.limit})"
        if kind == ErrorKind.CONTENT_FILTERED:
            return f"Content filtered: {msg}" if msg else "Content filtered by safety systems"
        if kind == ErrorKind.CANCELLED:
            return "Operation cancelled"
        if kind == ErrorKind.TIMEOUT:
            if self.timeout is not None:
                return f"Operation timed out after {int(self.timeout)} seconds"
            return f"Operation timed out: {msg}" if msg else "Operation timed out"
        if kind == ErrorKind.SERVER_ERROR:
            if msg:
                return f"Server error ({self.status_code}): {msg}"
            return f"Server error: HTTP {self.status_code}"
        if kind == ErrorKind.RATE_LIMITED:
            if self.retry_after is not None:
                return f"Rate limited. Retry after {int(self.retry_after)} seconds"
            return "Rate limited. Please try again later"
        label = _LABELS[kind]
        return f"{label}: {msg}" if msg else label

    @property
    def recovery_suggestion(self) -> str | None:
        kind = self.kind
        if kind == ErrorKind.PROVIDER_UNAVAILABLE:
            return _UNAVAILABLE_HINTS.get(self.reason or UnavailabilityReason.UNKNOWN)
        if kind == ErrorKind.TOKEN_LIMIT_EXCEEDED:
            return (
                f"Reduce your input to fit within {self.limit} tokens. "
                "Consider summarizing or chunking long content."
            )
        if kind == ErrorKind.SERVER_ERROR:
            if (self.status_code or 0) >= 500:
                return "The server is experiencing issues. Try again later."
            return "Check your request parameters and try again."
        if kind == ErrorKind.RATE_LIMITED:
            if self.retry_after is not None:
                return f"Wait {int(self.retry_after)} seconds before making another request."
            return "Wait a moment before making more requests."
        return _HINTS.get(kind)

    def to_dict(self) -> dict[str, Any]:
        """Flat JSON-friendly view, used for logging and the CLI."""
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "message": self.description,
            "retryable": self.is_retryable,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
        }

    def __repr__(self) -> str:
        return f"AIError(kind={self.kind.value!r}, message={self.description!r})"


_LABELS: dict[ErrorKind, str] = {
    ErrorKind.MODEL_NOT_FOUND: "Model not found",
    ErrorKind.MODEL_NOT_CACHED: "Model not cached",
    ErrorKind.INCOMPATIBLE_MODEL: "Model is not compatible",
    ErrorKind.AUTHENTICATION_FAILED: "Authentication failed",
    ErrorKind.BILLING_ERROR: "Billing error",
    ErrorKind.GENERATION_FAILED: "Generation failed",
    ErrorKind.NETWORK_ERROR: "Network error",
    ErrorKind.INSUFFICIENT_MEMORY: "Insufficient memory",
    ErrorKind.DOWNLOAD_FAILED: "Download failed",
    ErrorKind.FILE_ERROR: "File error",
    ErrorKind.INVALID_INPUT: "Invalid input",
    ErrorKind.UNSUPPORTED_AUDIO_FORMAT: "Unsupported audio format",
    ErrorKind.UNSUPPORTED_LANGUAGE: "Unsupported language",
}

_HINTS: dict[ErrorKind, str] = {
    ErrorKind.MODEL_NOT_FOUND: "Check the model identifier and try again.",
    ErrorKind.MODEL_NOT_CACHED: "Download the model before using it.",
    ErrorKind.INCOMPATIBLE_MODEL: "Choose a model architecture this provider supports.",
    ErrorKind.AUTHENTICATION_FAILED: "Verify your API key is correct and has not expired.",
    ErrorKind.BILLING_ERROR: "Check the billing status of your account.",
    ErrorKind.GENERATION_FAILED: "Try again or use a different model. If the problem persists, check your input.",
    ErrorKind.CONTENT_FILTERED: "Modify your prompt to comply with content guidelines.",
    ErrorKind.TIMEOUT: "Try again or increase the timeout. Consider a faster model for long operations.",
    ErrorKind.NETWORK_ERROR: "Check your internet connection and try again.",
    ErrorKind.INSUFFICIENT_MEMORY: "Close other applications to free memory, or try a smaller model.",
    ErrorKind.DOWNLOAD_FAILED: "Check your internet connection and available storage space, then try again.",
    ErrorKind.FILE_ERROR: "Check file permissions and available disk space.",
    ErrorKind.INVALID_INPUT: "Check the input format and try again.",
    ErrorKind.UNSUPPORTED_AUDIO_FORMAT: "Convert your audio to a supported format (WAV, MP3, M4A, FLAC).",
    ErrorKind.UNSUPPORTED_LANGUAGE: "Use a supported language or enable auto-detection.",
}


def is_retryable_error(exc: BaseException) -> bool:
    """Classify any exception, not just :class:`AIError`, as transient or not."""
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, AIError):
        return exc.is_retryable
    return isinstance(exc, (TimeoutError, ConnectionError))


def is_cancellation(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return True
    return isinstance(exc, AIError) and exc.kind == ErrorKind.CANCELLED
