"""Provider client selection by ``api_type``."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.config import ProfileSpec
from llm_relay.llm.providers.anthropic import AnthropicProvider
from llm_relay.llm.providers.base import ProviderClient
from llm_relay.llm.providers.gemini import GeminiProvider
from llm_relay.llm.providers.openai import OpenAIProvider

_logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[ProviderClient]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def create_provider(profile: ProfileSpec, **kwargs: Any) -> ProviderClient:
    """Instantiate the client for *profile*.

    Unknown ``api_type`` values fall back to the OpenAI-compatible client,
    which most self-hosted servers speak.
    """
    cls = PROVIDERS.get(profile.api_type)
    if cls is None:
        _logger.warning(
            "Unknown api_type %r for provider %r, using openai-compatible client",
            profile.api_type, profile.provider,
        )
        cls = OpenAIProvider
    return cls(profile, **kwargs)
