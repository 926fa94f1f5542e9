"""Configuration for llm-relay.

Config discovery (first match wins):
  1. explicit path (``--config`` flag)
  2. ``./llm_relay.yaml``
  3. ``~/.config/llm-relay/config.yaml``
  4. Built-in defaults

Example::

    profile: claude
    profiles:
      claude:
        api_type: anthropic
        api_key: ${ANTHROPIC_API_KEY}
        models: [claude-sonnet-4-5]
    relay:
      max_tool_depth: 5
      prompt_tool_threshold: 128
    retry:
      max_retries: 3
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)

_API_TYPES = ("openai", "anthropic", "gemini")


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """A named provider profile.

    ``api_key`` may hold several comma-separated keys; provider clients
    rotate through them.  ``url`` may be empty, in which case the provider
    family's public endpoint is used.
    """

    provider: str = "openai"
    api_type: str = "openai"  # "openai" | "anthropic" | "gemini"
    url: str = ""
    api_key: str = ""
    models: list[str] = field(default_factory=lambda: ["gpt-4o-mini"])
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_params: dict[str, Any] = field(default_factory=dict)

    @property
    def default_model(self) -> str:
        return self.models[0] if self.models else ""


@dataclass
class RetrySpec:
    """Backoff policy for :class:`~llm_relay.middleware.RetryMiddleware`."""

    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1  # +/- fraction of the computed delay


@dataclass
class RelaySpec:
    """Request-pipeline policy knobs."""

    max_tool_depth: int = 5
    # Tool count at or above which tools are described in the system prompt
    # instead of being sent as native function definitions.
    prompt_tool_threshold: int = 128
    request_timeout: float = 60.0  # seconds, 0 disables
    max_tokens: int = 4096
    concurrent_tools: bool = True
    log_requests: bool = False


@dataclass
class RelayConfig:
    """Top-level config for llm-relay."""

    profile: str = "default"
    profiles: dict[str, ProfileSpec] = field(
        default_factory=lambda: {"default": ProfileSpec()}
    )
    relay: RelaySpec = field(default_factory=RelaySpec)
    retry: RetrySpec = field(default_factory=RetrySpec)

    @property
    def active_profile(self) -> ProfileSpec:
        return self.profiles.get(self.profile, ProfileSpec())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./llm_relay.yaml"),
    Path.home() / ".config" / "llm-relay" / "config.yaml",
]

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(value: str) -> str:
    """Replace ``${VAR}`` references with environment values."""
    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        resolved = os.environ.get(name)
        if resolved is None:
            _logger.warning("Environment variable %s is not set", name)
            return ""
        return resolved

    return _ENV_REF.sub(_sub, value)


def _parse_profile(name: str, raw: dict[str, Any]) -> ProfileSpec:
    api_type = str(raw.get("api_type", "openai")).lower()
    if api_type not in _API_TYPES:
        _logger.warning(
            "Profile %s: unknown api_type %r, falling back to openai", name, api_type,
        )
        api_type = "openai"
    models = raw.get("models") or ProfileSpec().models
    if isinstance(models, str):
        models = [models]
    return ProfileSpec(
        provider=raw.get("provider", name),
        api_type=api_type,
        url=raw.get("url", ""),
        api_key=_expand_env(str(raw.get("api_key", ""))),
        models=list(models),
        extra_headers=dict(raw.get("extra_headers") or {}),
        extra_params=dict(raw.get("extra_params") or {}),
    )


def _overlay(spec_cls: type, raw: dict[str, Any] | None) -> Any:
    """Build *spec_cls* from defaults overlaid with known keys of *raw*."""
    if not raw:
        return spec_cls()
    known = {
        k: v for k, v in raw.items()
        if v is not None and k in spec_cls.__dataclass_fields__
    }
    unknown = set(raw) - set(known)
    if unknown:
        _logger.warning(
            "Ignoring unknown %s keys: %s", spec_cls.__name__, ", ".join(sorted(unknown)),
        )
    return spec_cls(**known)


def load_config(path: str | Path | None = None) -> RelayConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    RelayConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return RelayConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return RelayConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    profiles: dict[str, ProfileSpec] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(name, praw or {})

    if not profiles:
        profiles["default"] = ProfileSpec()

    profile = raw.get("profile") or next(iter(profiles))
    if profile not in profiles:
        _logger.warning("Active profile %r not defined, using defaults", profile)

    return RelayConfig(
        profile=profile,
        profiles=profiles,
        relay=_overlay(RelaySpec, raw.get("relay")),
        retry=_overlay(RetrySpec, raw.get("retry")),
    )
