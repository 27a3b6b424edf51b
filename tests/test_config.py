"""Tests for config/config_loader.py."""

from pathlib import Path

import pytest
import yaml

from config.config_loader import AgentsConfig, AppConfig, LockConfig, ModelConfig, PromptsConfig, load_config

PROMPTS = {
    "participant_system": "You are {title}.",
    "judge_system": "You judge.",
    "initial": "Topic: {topic}",
    "history": "Topic: {topic}\nRound {round}\n{responses}",
    "judge_synthesis": "{topic}\n{responses}",
    "interjection": "{topic} {round}",
}


@pytest.fixture
def minimal_settings(tmp_path: Path) -> Path:
    """Write a minimal valid settings.yaml to a temp path."""
    settings = {
        "defaults": {
            "max_rounds": 4,
            "consensus_mode": "majority",
            "judge": "openai",
            "output_dir": "./out",
            "default_panel": ["claude", "openai"],
        },
        "agents": {"max_concurrent": 2, "shutdown_grace_sec": 1.5},
        "lock": {"retries": 7},
        "models": {
            "claude": {
                "sdk": "anthropic",
                "model": "claude-sonnet-4-20250514",
                "api_key_env": "TEST_CLAUDE_KEY",
                "timeout_sec": 120,
                "max_tokens": 8192,
            }
        },
        "prompts": PROMPTS,
        "personas": {"claude": "Lean towards operational simplicity."},
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings), encoding="utf-8")
    return path


def test_load_config_returns_app_config(minimal_settings):
    assert isinstance(load_config(minimal_settings), AppConfig)


def test_load_config_defaults(minimal_settings):
    defaults = load_config(minimal_settings).defaults
    assert defaults.max_rounds == 4
    assert defaults.consensus_mode == "majority"
    assert defaults.judge == "openai"
    assert defaults.default_panel == ["claude", "openai"]
    assert isinstance(defaults.output_dir, Path)


def test_unset_defaults_fall_back(minimal_settings):
    defaults = load_config(minimal_settings).defaults
    assert defaults.consensus_threshold == 0.7
    assert defaults.resolution_quorum == 0.75
    assert defaults.mode == "sequential"
    assert defaults.sessions_dir == Path("sessions")


def test_agents_and_lock_sections(minimal_settings):
    config = load_config(minimal_settings)
    assert config.agents.max_concurrent == 2
    assert config.agents.shutdown_grace_sec == 1.5
    assert config.agents.max_restart_attempts == AgentsConfig().max_restart_attempts
    assert config.lock.retries == 7
    assert config.lock.stale_timeout_sec == LockConfig().stale_timeout_sec


def test_optional_sections_missing(tmp_path: Path):
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump({"models": {}, "prompts": PROMPTS}), encoding="utf-8")
    config = load_config(path)
    assert config.agents == AgentsConfig()
    assert config.lock == LockConfig()
    assert config.prompts.personas == {}
    assert config.defaults.default_panel == []


def test_load_config_models(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config.models["claude"], ModelConfig)
    assert config.models["claude"].model == "claude-sonnet-4-20250514"
    assert config.models["claude"].base_url is None


def test_load_config_prompts(minimal_settings):
    prompts = load_config(minimal_settings).prompts
    assert isinstance(prompts, PromptsConfig)
    assert "{topic}" in prompts.initial
    assert prompts.personas["claude"].startswith("Lean towards")


def test_missing_prompt_raises(tmp_path: Path):
    path = tmp_path / "settings.yaml"
    prompts = {k: v for k, v in PROMPTS.items() if k != "history"}
    path.write_text(yaml.dump({"models": {}, "prompts": prompts}), encoding="utf-8")
    with pytest.raises(KeyError):
        load_config(path)


def test_load_config_available_providers_with_key(minimal_settings, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test-key")
    assert "claude" in load_config(minimal_settings).available_providers


def test_blank_key_is_not_available(minimal_settings, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "   ")
    assert "claude" not in load_config(minimal_settings).available_providers


def test_load_config_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config(Path("/nonexistent/settings.yaml"))


def test_shipped_settings_load():
    config = load_config()
    assert set(config.models) == {"claude", "openai", "gemini", "grok"}
    assert config.models["grok"].base_url == "https://api.x.ai/v1"
    assert "{title}" in config.prompts.participant_system
