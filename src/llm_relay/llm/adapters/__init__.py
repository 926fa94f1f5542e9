"""Provider stream adapters: raw wire frames in, chunks out."""

from llm_relay.llm.adapters.anthropic import AnthropicChunkAdapter
from llm_relay.llm.adapters.base import ChunkAdapter, ToolCallBuffer, parse_tool_arguments_json
from llm_relay.llm.adapters.gemini import GeminiChunkAdapter
from llm_relay.llm.adapters.openai import OpenAIChunkAdapter

__all__ = [
    "AnthropicChunkAdapter",
    "ChunkAdapter",
    "GeminiChunkAdapter",
    "OpenAIChunkAdapter",
    "ToolCallBuffer",
    "parse_tool_arguments_json",
]
