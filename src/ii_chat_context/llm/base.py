"""
Base classes for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Union

# Message content is plain text or a list of typed parts:
# {"type": "text", "text": ...}, {"type": "image", "mime_type": ..., "data": ...}, ...
MessageContent = Union[str, list[dict[str, Any]]]


class RequestCancelledError(Exception):
    """Raised when an in-flight request is cancelled by the user."""


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system"]
    content: MessageContent
    source_type: str | None = None
    source_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class Usage:
    """Token usage reported for a request."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return self.total_tokens == 0 or (self.prompt_tokens == 0 and self.completion_tokens == 0)

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    reasoning_content: str | None = None
    usage: Usage | None = None
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None


@dataclass
class StreamChunk:
    """A piece of streamed output."""

    text: str
    is_reasoning: bool = False
    usage: Usage | None = None


ChunkCallback = Callable[[str, bool], Union[None, Awaitable[None]]]


@dataclass
class RequestOptions:
    """A request to the model layer."""

    profile_id: str
    model_id: str
    messages: list[LLMMessage] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM."""
        pass

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from the LLM."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass


class ModelRequestSender(ABC):
    """Sends assembled requests to the model layer."""

    @abstractmethod
    async def send_request(
        self,
        options: RequestOptions,
        on_chunk: ChunkCallback | None = None,
    ) -> LLMResponse:
        """Send a request and return the complete response."""
        pass
