"""
LLM module: provider clients and the request sender used by the core.

Providers:
- OpenAI GPT (native SDK, also any OpenAI-compatible endpoint)
- Anthropic Claude (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    ModelRequestSender,
    RequestCancelledError,
    RequestOptions,
    StreamChunk,
    Usage,
)
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .factory import create_llm
from .sender import LLMSender

__all__ = [
    "BaseLLM",
    "LLMMessage",
    "LLMResponse",
    "ModelRequestSender",
    "RequestCancelledError",
    "RequestOptions",
    "StreamChunk",
    "Usage",
    "AnthropicLLM",
    "OpenAILLM",
    "LLMSender",
    "create_llm",
]
