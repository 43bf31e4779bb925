"""
Profile-aware request sender.

Resolves a (profile_id, model_id) pair to a provider client and runs
either a one-shot or a streamed request. Streamed chunks are forwarded to
an optional callback; the assembled response is returned at the end.
"""

import inspect

import structlog

from ..config import Settings, get_settings
from .base import (
    BaseLLM,
    ChunkCallback,
    LLMResponse,
    ModelRequestSender,
    RequestOptions,
    Usage,
)
from .factory import create_llm

logger = structlog.get_logger()


class LLMSender(ModelRequestSender):
    """Sends requests through provider clients built from settings profiles."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._clients: dict[tuple[str, str], BaseLLM] = {}

    def get_client(self, profile_id: str, model_id: str) -> BaseLLM:
        key = (profile_id, model_id)
        if key not in self._clients:
            profile = self.settings.get_profile(profile_id)
            if profile is None:
                raise ValueError(f"Unknown LLM profile: {profile_id}")
            if not profile.enabled:
                raise ValueError(f"LLM profile is disabled: {profile_id}")
            self._clients[key] = create_llm(profile, model_id, self.settings)
        return self._clients[key]

    async def send_request(
        self,
        options: RequestOptions,
        on_chunk: ChunkCallback | None = None,
    ) -> LLMResponse:
        client = self.get_client(options.profile_id, options.model_id)

        logger.info(
            "Sending LLM request",
            profile_id=options.profile_id,
            model_id=options.model_id,
            message_count=len(options.messages),
            stream=options.stream,
        )

        if not options.stream:
            return await client.generate(
                options.messages,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )

        content: list[str] = []
        reasoning: list[str] = []
        usage: Usage | None = None

        async for chunk in client.stream(
            options.messages,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        ):
            if chunk.usage is not None:
                usage = chunk.usage
            if not chunk.text:
                continue
            (reasoning if chunk.is_reasoning else content).append(chunk.text)
            if on_chunk is not None:
                result = on_chunk(chunk.text, chunk.is_reasoning)
                if inspect.isawaitable(result):
                    await result

        return LLMResponse(
            content="".join(content),
            reasoning_content="".join(reasoning) or None,
            usage=usage,
            model=options.model_id,
        )
