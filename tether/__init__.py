"""
tether — one async client for cloud and local text-generation services.

A provider-agnostic conversation engine: chat sessions that drive
multi-round tool calling with rollback on failure, on top of a resilient
HTTP layer (bounded retries, error classification, rate-limit tracking)
and a streaming event state machine.
"""

from pathlib import Path
import tomllib
from importlib.metadata import version, PackageNotFoundError

from tether.core.errors import AIError, ErrorCategory, ErrorKind, UnavailabilityReason
from tether.core.models import (
    FinishReason,
    GenerateConfig,
    GenerationChunk,
    GenerationResult,
    Message,
    RateLimitInfo,
    Role,
    ToolCall,
    ToolChoice,
    ToolDefinition,
    ToolOutput,
    UsageStats,
)


def _resolve_version() -> str:
    """Resolve the tether version.

    Priority:
    1) Local source checkout version from pyproject.toml (if present)
    2) Installed package metadata (tether-ai)
    3) Safe fallback
    """
    root = Path(__file__).resolve().parent.parent
    pyproject = root / "pyproject.toml"
    if pyproject.exists():
        try:
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            data = {}
        ver = data.get("project", {}).get("version")
        if isinstance(ver, str) and ver.strip():
            return ver.strip()

    try:
        return version("tether-ai")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _resolve_version()

__all__ = [
    "AIError",
    "ErrorCategory",
    "ErrorKind",
    "FinishReason",
    "GenerateConfig",
    "GenerationChunk",
    "GenerationResult",
    "Message",
    "RateLimitInfo",
    "Role",
    "ToolCall",
    "ToolChoice",
    "ToolDefinition",
    "ToolOutput",
    "UnavailabilityReason",
    "UsageStats",
    "__version__",
]
