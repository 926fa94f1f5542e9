"""llm-relay: one streaming chunk protocol over OpenAI, Anthropic and Gemini,
with middleware composition and tool-call recursion."""

from llm_relay.cancellation import CancellationRegistry, CancelToken
from llm_relay.chunks import PROTOCOL_VERSION, ChunkType
from llm_relay.config import RelayConfig, load_config
from llm_relay.errors import ErrorKind, RelayError, RequestCancelled, classify_error
from llm_relay.middleware.base import CompletionsRequest
from llm_relay.provider import AiProvider
from llm_relay.types import CompletionsResult, ToolDescriptor, ToolResponse

__version__ = "0.1.0"

__all__ = [
    "PROTOCOL_VERSION",
    "AiProvider",
    "CancelToken",
    "CancellationRegistry",
    "ChunkType",
    "CompletionsRequest",
    "CompletionsResult",
    "ErrorKind",
    "RelayConfig",
    "RelayError",
    "RequestCancelled",
    "ToolDescriptor",
    "ToolResponse",
    "classify_error",
    "load_config",
]
