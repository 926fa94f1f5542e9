"""Provider clients: request building and HTTP transport per API family."""

from llm_relay.llm.providers.anthropic import AnthropicProvider
from llm_relay.llm.providers.base import ProviderClient, sanitize_tool_name
from llm_relay.llm.providers.factory import PROVIDERS, create_provider
from llm_relay.llm.providers.gemini import GeminiProvider
from llm_relay.llm.providers.openai import OpenAIProvider

__all__ = [
    "PROVIDERS",
    "AnthropicProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "ProviderClient",
    "create_provider",
    "sanitize_tool_name",
]
