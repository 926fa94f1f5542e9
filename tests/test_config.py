"""Tests for llm-relay config loading."""

from __future__ import annotations

from pathlib import Path

import yaml

from llm_relay.config import (
    ProfileSpec,
    RelayConfig,
    RelaySpec,
    RetrySpec,
    load_config,
)


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "llm_relay.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestSpecs:
    def test_profile_defaults(self):
        p = ProfileSpec()
        assert p.api_type == "openai"
        assert p.default_model == "gpt-4o-mini"

    def test_profile_without_models(self):
        assert ProfileSpec(models=[]).default_model == ""

    def test_relay_defaults(self):
        r = RelaySpec()
        assert r.max_tool_depth == 5
        assert r.prompt_tool_threshold == 128
        assert r.concurrent_tools is True

    def test_retry_defaults(self):
        r = RetrySpec()
        assert r.max_retries == 3
        assert r.initial_delay == 1.0
        assert r.multiplier == 2.0
        assert r.max_delay == 30.0

    def test_active_profile_fallback(self):
        config = RelayConfig(profile="missing")
        assert isinstance(config.active_profile, ProfileSpec)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path: Path):
        config = load_config(tmp_path / "nope.yaml")
        assert config.profile == "default"
        assert "default" in config.profiles

    def test_full_config(self, tmp_path: Path):
        path = _write(tmp_path, {
            "profile": "claude",
            "profiles": {
                "claude": {
                    "api_type": "anthropic",
                    "api_key": "k1,k2",
                    "models": ["claude-sonnet-4-5"],
                },
                "local": {
                    "api_type": "openai",
                    "url": "http://localhost:1234",
                    "models": "qwen3-8b",
                    "extra_headers": {"X-Test": "1"},
                },
            },
            "relay": {"max_tool_depth": 3, "prompt_tool_threshold": 10},
            "retry": {"max_retries": 0},
        })
        config = load_config(path)

        assert config.profile == "claude"
        assert config.active_profile.api_type == "anthropic"
        assert config.active_profile.api_key == "k1,k2"
        local = config.profiles["local"]
        assert local.models == ["qwen3-8b"]
        assert local.provider == "local"
        assert local.extra_headers == {"X-Test": "1"}
        assert config.relay.max_tool_depth == 3
        assert config.relay.prompt_tool_threshold == 10
        assert config.relay.request_timeout == 60.0
        assert config.retry.max_retries == 0

    def test_first_profile_is_default(self, tmp_path: Path):
        path = _write(tmp_path, {"profiles": {"a": {}, "b": {}}})
        assert load_config(path).profile == "a"

    def test_unknown_api_type_falls_back(self, tmp_path: Path):
        path = _write(tmp_path, {"profiles": {"x": {"api_type": "cohere"}}})
        assert load_config(path).profiles["x"].api_type == "openai"

    def test_env_expansion(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_KEY", "secret")
        path = _write(tmp_path, {"profiles": {"p": {"api_key": "${RELAY_TEST_KEY}"}}})
        assert load_config(path).profiles["p"].api_key == "secret"

    def test_missing_env_var_is_empty(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("RELAY_UNSET_KEY", raising=False)
        path = _write(tmp_path, {"profiles": {"p": {"api_key": "${RELAY_UNSET_KEY}"}}})
        assert load_config(path).profiles["p"].api_key == ""

    def test_unknown_relay_keys_ignored(self, tmp_path: Path):
        path = _write(tmp_path, {"relay": {"max_tool_depth": 2, "bogus": True}})
        config = load_config(path)
        assert config.relay.max_tool_depth == 2
        assert not hasattr(config.relay, "bogus")

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "llm_relay.yaml"
        path.write_text("")
        config = load_config(path)
        assert config.profiles["default"].api_type == "openai"

    def test_search_path(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        _write(tmp_path, {"profile": "here", "profiles": {"here": {"api_type": "gemini"}}})
        assert load_config().active_profile.api_type == "gemini"
