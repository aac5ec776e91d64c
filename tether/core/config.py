"""
tether.core.config — User-level defaults and runtime configuration.

Resolution order (highest priority first):
  1. Explicit keyword overrides
  2. Environment variables (TETHER_PROVIDER, TETHER_MODEL, ...)
  3. Global config file (``config.json`` in the user config dir)
  4. Built-in defaults
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from tether.adapters.base import BaseProvider

logger = logging.getLogger("tether.core.config")


def get_global_config_dir() -> Path:
    """
    Return the user-level config directory for tether, created if needed.

    - Windows:  %LOCALAPPDATA%\\tether
    - macOS:    ~/Library/Application Support/tether
    - Linux:    $XDG_CONFIG_HOME/tether  (default ~/.config/tether)
    """
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    d = base / "tether"
    d.mkdir(parents=True, exist_ok=True)
    return d


class GlobalConfig(BaseModel):
    """
    User-level defaults stored as ``config.json`` in the global config
    directory.  API keys are kept per provider; environment variables
    always take precedence over them.
    """
    provider: str = "anthropic"
    model: str = ""
    api_keys: dict[str, str] = {}
    base_urls: dict[str, str] = {}

    @classmethod
    def load(cls, path: Path | None = None) -> "GlobalConfig":
        """Load from disk, returning defaults if the file is missing or unreadable."""
        path = path or get_global_config_dir() / "config.json"
        if not path.exists():
            return cls()
        try:
            return cls(**json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", path, exc)
            return cls()

    def save(self, path: Path | None = None) -> Path:
        """Persist to disk. Returns the file path."""
        path = path or get_global_config_dir() / "config.json"
        path.write_text(json.dumps(self.model_dump(), indent=2), encoding="utf-8")
        return path


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


class TetherConfig(BaseModel):
    """Runtime configuration for building providers and sessions."""
    provider: str = "anthropic"
    model: str = ""
    api_key: str = ""
    base_url: str = ""
    max_retries: int = 3
    timeout: float = 180.0
    max_tool_call_rounds: int = 8

    @classmethod
    def load(cls, global_config: GlobalConfig | None = None, **overrides: Any) -> "TetherConfig":
        """Resolve overrides > environment > global config > defaults."""
        from tether.adapters import PROVIDER_DEFAULTS  # Lazy to avoid circular import

        gc = global_config or GlobalConfig.load()
        overrides = {k: v for k, v in overrides.items() if v not in (None, "")}

        provider = (overrides.pop("provider", None) or os.getenv("TETHER_PROVIDER") or gc.provider)
        provider = provider.lower().strip()
        defaults = PROVIDER_DEFAULTS.get(provider, {})

        api_key = overrides.pop("api_key", None)
        if not api_key:
            env_key = defaults.get("env_key", "")
            api_key = (os.getenv(env_key, "") if env_key else "") or gc.api_keys.get(provider, "")

        model = (
            overrides.pop("model", None)
            or os.getenv("TETHER_MODEL")
            or (gc.model if gc.provider == provider else "")
            or defaults.get("model", "")
        )
        base_url = (
            overrides.pop("base_url", None)
            or os.getenv("TETHER_BASE_URL")
            or gc.base_urls.get(provider, "")
        )

        return cls(
            provider=provider,
            model=model,
            api_key=api_key,
            base_url=base_url,
            max_retries=overrides.get("max_retries", _env_int("TETHER_MAX_RETRIES", 3)),
            timeout=overrides.get("timeout", _env_float("TETHER_TIMEOUT", 180.0)),
            max_tool_call_rounds=overrides.get(
                "max_tool_call_rounds", _env_int("TETHER_MAX_TOOL_ROUNDS", 8)
            ),
        )

    def create_provider(self) -> "BaseProvider":
        from tether.adapters import create_provider
        from tether.adapters.http import RetryConfig

        return create_provider(
            self.provider,
            api_key=self.api_key,
            base_url=self.base_url,
            retry=RetryConfig(max_retries=self.max_retries),
            timeout=self.timeout,
        )
