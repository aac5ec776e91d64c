"""
tether.adapters — Provider registry.

``create_provider()`` returns the right provider for a name.

Supported providers:
    - ``anthropic``  — Claude models over the Messages API
    - ``openai``     — OpenAI Chat Completions
    - ``ollama``     — local models via Ollama's OpenAI-compatible endpoint
    - ``lmstudio``   — any model loaded in LM Studio's local server
"""

from __future__ import annotations

from tether.adapters.base import BaseProvider, ProviderAvailability
from tether.adapters.http import RetryConfig, RetryStrategy


# ---- Default models per provider ------------------------------------------
PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "anthropic": {
        "model": "claude-sonnet-4-5",
        "env_key": "ANTHROPIC_API_KEY",
    },
    "openai": {
        "model": "gpt-4.1-mini",
        "env_key": "OPENAI_API_KEY",
    },
    "ollama": {
        "model": "qwen2.5-coder:7b",
        "env_key": "",  # No API key needed for local models
    },
    "lmstudio": {
        "model": "loaded-model",
        "env_key": "",  # LM Studio accepts any value
    },
}


def create_provider(
    provider: str,
    api_key: str = "",
    base_url: str = "",
    *,
    retry: RetryConfig | None = None,
    timeout: float = 180.0,
) -> BaseProvider:
    """
    Factory function that returns the provider for the given name.

    Parameters
    ----------
    provider :
        One of ``"anthropic"``, ``"openai"``, ``"ollama"``, ``"lmstudio"``.
    api_key :
        API key for the provider (not needed for local servers).
    base_url :
        Optional base URL override (e.g. Ollama on a non-standard port).
    retry :
        Retry policy for the request layer; defaults to 3 retries.
    timeout :
        Read timeout in seconds.
    """
    provider = provider.lower().strip()
    if provider not in PROVIDER_DEFAULTS:
        raise ValueError(
            f"Unknown provider: '{provider}'. "
            f"Supported: {', '.join(PROVIDER_DEFAULTS)}"
        )

    if provider == "anthropic":
        from tether.adapters.anthropic import AnthropicProvider

        return AnthropicProvider(api_key, base_url=base_url, retry=retry, timeout=timeout)

    from tether.adapters.openai import OpenAIProvider

    if provider == "openai":
        return OpenAIProvider(api_key, base_url=base_url, retry=retry, timeout=timeout)

    if provider == "ollama":
        return OpenAIProvider(
            api_key,
            base_url=base_url or "http://localhost:11434",
            requires_api_key=False,
            retry=retry,
            timeout=timeout,
            name="ollama",
        )

    # lmstudio: a placeholder key keeps stricter builds from rejecting the request
    return OpenAIProvider(
        api_key or "lm-studio",
        base_url=base_url or "http://localhost:1234",
        requires_api_key=False,
        retry=retry,
        timeout=timeout,
        name="lmstudio",
    )


__all__ = [
    "BaseProvider",
    "PROVIDER_DEFAULTS",
    "ProviderAvailability",
    "RetryConfig",
    "RetryStrategy",
    "create_provider",
]
