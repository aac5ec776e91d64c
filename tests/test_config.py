"""Tests for global config persistence and runtime config resolution."""

from __future__ import annotations

import json

import pytest

from tether.adapters.anthropic import AnthropicProvider
from tether.adapters.openai import OpenAIProvider
from tether.core.config import GlobalConfig, TetherConfig, get_global_config_dir

_ENV_VARS = (
    "TETHER_PROVIDER",
    "TETHER_MODEL",
    "TETHER_BASE_URL",
    "TETHER_MAX_RETRIES",
    "TETHER_TIMEOUT",
    "TETHER_MAX_TOOL_ROUNDS",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_global_config_round_trips_through_disk(tmp_path):
    path = tmp_path / "config.json"
    GlobalConfig(provider="openai", model="gpt-4.1", api_keys={"openai": "sk-1"}).save(path)

    loaded = GlobalConfig.load(path)

    assert loaded.provider == "openai"
    assert loaded.model == "gpt-4.1"
    assert loaded.api_keys == {"openai": "sk-1"}
    assert json.loads(path.read_text())["provider"] == "openai"


def test_missing_or_corrupt_global_config_falls_back_to_defaults(tmp_path):
    assert GlobalConfig.load(tmp_path / "absent.json") == GlobalConfig()

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert GlobalConfig.load(broken) == GlobalConfig()


def test_global_config_dir_honours_xdg(monkeypatch, tmp_path):
    monkeypatch.setattr("sys.platform", "linux")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    path = get_global_config_dir()
    assert path == tmp_path / "tether"
    assert path.is_dir()


def test_defaults_come_from_the_provider_table():
    config = TetherConfig.load(GlobalConfig())

    assert config.provider == "anthropic"
    assert config.model == "claude-sonnet-4-5"
    assert config.api_key == ""
    assert config.max_retries == 3
    assert config.timeout == 180.0
    assert config.max_tool_call_rounds == 8


def test_global_config_supplies_model_and_key():
    gc = GlobalConfig(provider="openai", model="gpt-4o", api_keys={"openai": "sk-file"})
    config = TetherConfig.load(gc)

    assert config.provider == "openai"
    assert config.model == "gpt-4o"
    assert config.api_key == "sk-file"


def test_environment_beats_global_config(monkeypatch):
    monkeypatch.setenv("TETHER_PROVIDER", "OpenAI")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("TETHER_MAX_RETRIES", "5")
    monkeypatch.setenv("TETHER_TIMEOUT", "not-a-number")
    gc = GlobalConfig(provider="anthropic", model="claude-opus-4", api_keys={"openai": "sk-file"})

    config = TetherConfig.load(gc)

    assert config.provider == "openai"
    # The saved model belongs to another provider
    assert config.model == "gpt-4.1-mini"
    assert config.api_key == "sk-env"
    assert config.max_retries == 5
    assert config.timeout == 180.0


def test_overrides_beat_everything(monkeypatch):
    monkeypatch.setenv("TETHER_MODEL", "env-model")
    config = TetherConfig.load(
        GlobalConfig(),
        provider="ollama",
        model="llama3:8b",
        base_url="http://gpu-box:11434",
        max_retries=0,
        max_tool_call_rounds=2,
        api_key=None,
    )

    assert config.provider == "ollama"
    assert config.model == "llama3:8b"
    assert config.base_url == "http://gpu-box:11434"
    assert config.max_retries == 0
    assert config.max_tool_call_rounds == 2


def test_create_provider_uses_resolved_settings():
    anthropic = TetherConfig(provider="anthropic", api_key="sk-a").create_provider()
    assert isinstance(anthropic, AnthropicProvider)
    assert anthropic.is_available

    ollama = TetherConfig(provider="ollama", base_url="http://gpu-box:11434").create_provider()
    assert isinstance(ollama, OpenAIProvider)
    assert ollama.name == "ollama"
    assert str(ollama._client.base_url).startswith("http://gpu-box:11434")
