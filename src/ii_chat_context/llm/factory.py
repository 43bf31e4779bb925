"""
LLM factory for creating provider instances.

Supports: OpenAI GPT, Anthropic Claude, OpenRouter (OpenAI-compatible).
"""

from ..config import LLMProfile, Settings, get_settings
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .openai import OpenAILLM


def create_llm(
    profile: LLMProfile,
    model_id: str,
    settings: Settings | None = None,
) -> BaseLLM:
    """Create an LLM client for one model of a profile.

    Provider routing:
    - anthropic -> AnthropicLLM (native Anthropic SDK)
    - openai -> OpenAILLM (native OpenAI SDK, any compatible base_url)
    - openrouter -> OpenAILLM (OpenAI-compatible endpoint)
    """
    settings = settings or get_settings()
    provider = profile.provider

    if provider == "anthropic":
        return AnthropicLLM(
            api_key=profile.api_key,
            model=model_id,
            base_url=profile.base_url,
            max_tokens=settings.default_max_tokens,
            temperature=settings.default_temperature,
        )
    elif provider == "openai":
        return OpenAILLM(
            api_key=profile.api_key,
            model=model_id,
            base_url=profile.base_url,
            max_tokens=settings.default_max_tokens,
            temperature=settings.default_temperature,
        )
    elif provider == "openrouter":
        return OpenAILLM(
            api_key=profile.api_key,
            model=model_id,
            base_url=profile.base_url or "https://openrouter.ai/api/v1",
            max_tokens=settings.default_max_tokens,
            temperature=settings.default_temperature,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
