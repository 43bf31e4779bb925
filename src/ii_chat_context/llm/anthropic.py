"""
Anthropic Claude LLM provider.
"""

from typing import Any, AsyncIterator

import anthropic
import structlog

from .base import BaseLLM, LLMMessage, LLMResponse, StreamChunk, Usage

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_part(self, part: dict[str, Any]) -> dict[str, Any] | None:
        part_type = part.get("type")
        if part_type == "text":
            return {"type": "text", "text": part.get("text", "")}
        if part_type == "image":
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": part.get("mime_type", "image/png"),
                    "data": part.get("data", ""),
                },
            }
        if part_type == "document":
            if part.get("text") is not None:
                return {"type": "text", "text": part["text"]}
            return {
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": part.get("mime_type", "application/pdf"),
                    "data": part.get("data", ""),
                },
            }
        logger.debug("Dropping unsupported content part for Anthropic", part_type=part_type)
        return None

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to Anthropic format."""
        converted = []

        for msg in messages:
            if msg.role == "system":
                continue
            if isinstance(msg.content, str):
                converted.append({"role": msg.role, "content": msg.content})
            else:
                parts = [p for p in (self._convert_part(part) for part in msg.content) if p]
                converted.append({"role": msg.role, "content": parts})

        return converted

    def _extract_system_prompt(self, messages: list[LLMMessage]) -> str | None:
        """Join all system messages into one system prompt."""
        parts = [
            msg.content
            for msg in messages
            if msg.role == "system" and isinstance(msg.content, str) and msg.content
        ]
        return "\n\n".join(parts) or None

    def _request_kwargs(
        self,
        messages: list[LLMMessage],
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": self._convert_messages(messages),
        }
        system = self._extract_system_prompt(messages)
        if system:
            kwargs["system"] = system
        return kwargs

    async def generate(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs = self._request_kwargs(messages, temperature, max_tokens)

        try:
            response = await self.client.messages.create(**kwargs)

            content = ""
            reasoning = ""
            for block in response.content:
                if block.type == "text":
                    content += block.text
                elif block.type == "thinking":
                    reasoning += block.thinking

            usage = Usage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            )
            return LLMResponse(
                content=content,
                reasoning_content=reasoning or None,
                usage=usage,
                model=response.model,
                stop_reason=response.stop_reason,
                raw_response=response,
            )

        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise

    async def stream(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from Claude."""
        kwargs = self._request_kwargs(messages, temperature, max_tokens)

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type != "content_block_delta":
                        continue
                    if event.delta.type == "text_delta":
                        yield StreamChunk(event.delta.text)
                    elif event.delta.type == "thinking_delta":
                        yield StreamChunk(event.delta.thinking, is_reasoning=True)

                final = await stream.get_final_message()
                yield StreamChunk(
                    "",
                    usage=Usage(
                        prompt_tokens=final.usage.input_tokens,
                        completion_tokens=final.usage.output_tokens,
                        total_tokens=final.usage.input_tokens + final.usage.output_tokens,
                    ),
                )

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise
