"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

from typing import Any, AsyncIterator

import openai
import structlog

from .base import BaseLLM, LLMMessage, LLMResponse, StreamChunk, Usage

logger = structlog.get_logger()


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _convert_part(self, part: dict[str, Any]) -> dict[str, Any] | None:
        part_type = part.get("type")
        if part_type == "text":
            return {"type": "text", "text": part.get("text", "")}
        if part_type == "image":
            url = part.get("url") or f"data:{part.get('mime_type', 'image/png')};base64,{part.get('data', '')}"
            return {"type": "image_url", "image_url": {"url": url}}
        if part_type == "audio":
            fmt = (part.get("mime_type") or "audio/wav").split("/")[-1]
            return {"type": "input_audio", "input_audio": {"data": part.get("data", ""), "format": fmt}}
        if part_type == "document":
            if part.get("text") is not None:
                return {"type": "text", "text": part["text"]}
            return {
                "type": "file",
                "file": {
                    "filename": part.get("name", "document"),
                    "file_data": f"data:{part.get('mime_type', 'application/pdf')};base64,{part.get('data', '')}",
                },
            }
        logger.debug("Dropping unsupported content part for OpenAI", part_type=part_type)
        return None

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to OpenAI format."""
        converted = []

        for msg in messages:
            if isinstance(msg.content, str):
                converted.append({"role": msg.role, "content": msg.content})
                continue
            parts = [p for p in (self._convert_part(part) for part in msg.content) if p]
            converted.append({"role": msg.role, "content": parts})

        return converted

    @staticmethod
    def _usage(raw: Any) -> Usage | None:
        if raw is None:
            return None
        return Usage(
            prompt_tokens=raw.prompt_tokens or 0,
            completion_tokens=raw.completion_tokens or 0,
            total_tokens=raw.total_tokens or 0,
        )

    def _request_kwargs(
        self,
        messages: list[LLMMessage],
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": self._convert_messages(messages),
        }

    async def generate(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a response from GPT."""
        kwargs = self._request_kwargs(messages, temperature, max_tokens)

        try:
            response = await self.client.chat.completions.create(**kwargs)

            choice = response.choices[0]
            message = choice.message

            return LLMResponse(
                content=message.content or "",
                reasoning_content=getattr(message, "reasoning_content", None),
                usage=self._usage(response.usage),
                model=response.model,
                stop_reason=choice.finish_reason,
                raw_response=response,
            )

        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e))
            raise

    async def stream(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from GPT."""
        kwargs = self._request_kwargs(messages, temperature, max_tokens)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                if getattr(chunk, "usage", None):
                    yield StreamChunk("", usage=self._usage(chunk.usage))
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield StreamChunk(reasoning, is_reasoning=True)
                if delta.content:
                    yield StreamChunk(delta.content)

        except openai.APIError as e:
            logger.error("OpenAI streaming error", error=str(e))
            raise
