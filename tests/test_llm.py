"""
Tests for LLM providers, the factory and the request sender.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ii_chat_context.config import LLMProfile, Settings
from ii_chat_context.llm import AnthropicLLM, LLMSender, OpenAILLM, create_llm
from ii_chat_context.llm.base import (
    LLMMessage,
    LLMResponse,
    RequestOptions,
    StreamChunk,
    Usage,
)


def test_create_llm_routes_providers():
    """Test provider routing in the factory."""
    anthropic_llm = create_llm(LLMProfile(id="a", provider="anthropic", api_key="k"), "claude-sonnet-4-5")
    openai_llm = create_llm(LLMProfile(id="o", provider="openai", api_key="k"), "gpt-4o")
    router_llm = create_llm(LLMProfile(id="r", provider="openrouter", api_key="k"), "meta/llama")

    assert isinstance(anthropic_llm, AnthropicLLM)
    assert isinstance(openai_llm, OpenAILLM)
    assert isinstance(router_llm, OpenAILLM)
    assert router_llm.base_url == "https://openrouter.ai/api/v1"
    assert router_llm.model == "meta/llama"


def test_create_llm_unknown_provider():
    """Test an unsupported provider is rejected."""
    profile = LLMProfile.model_construct(id="x", provider="mystery", api_key="k", base_url=None)
    with pytest.raises(ValueError):
        create_llm(profile, "m")


def test_openai_message_conversion():
    """Test multimodal parts map to OpenAI content parts."""
    llm = OpenAILLM(api_key="k")
    messages = [
        LLMMessage(role="system", content="sys"),
        LLMMessage(
            role="user",
            content=[
                {"type": "text", "text": "look"},
                {"type": "image", "mime_type": "image/jpeg", "data": "AAAA"},
                {"type": "video", "data": "BBBB"},
            ],
        ),
    ]

    converted = llm._convert_messages(messages)

    assert converted[0] == {"role": "system", "content": "sys"}
    assert converted[1]["content"] == [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
    ]


def test_anthropic_system_prompt_extraction():
    """Test system messages become the Anthropic system prompt."""
    llm = AnthropicLLM(api_key="k")
    messages = [
        LLMMessage(role="system", content="one"),
        LLMMessage(role="user", content="hi"),
        LLMMessage(role="system", content="two"),
    ]

    kwargs = llm._request_kwargs(messages, None, None)

    assert kwargs["system"] == "one\n\ntwo"
    assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
    assert kwargs["temperature"] == 0.7


@pytest.mark.asyncio
async def test_openai_generate():
    """Test non-streaming generation with a mocked client."""
    llm = OpenAILLM(api_key="k")
    message = MagicMock(content="answer", reasoning_content=None)
    response = MagicMock(
        choices=[MagicMock(message=message, finish_reason="stop")],
        usage=MagicMock(prompt_tokens=3, completion_tokens=2, total_tokens=5),
        model="gpt-4o",
    )
    llm.client = MagicMock()
    llm.client.chat.completions.create = AsyncMock(return_value=response)

    result = await llm.generate([LLMMessage(role="user", content="q")])

    assert result.content == "answer"
    assert result.usage == Usage(3, 2, 5)
    assert result.stop_reason == "stop"


@pytest.fixture
def sender_settings():
    return Settings(
        _env_file=None,
        profiles=[
            LLMProfile(id="main", provider="openai", api_key="k"),
            LLMProfile(id="off", provider="openai", api_key="k", enabled=False),
        ],
    )


class ScriptedLLM:
    def __init__(self, chunks):
        self.chunks = chunks
        self.generate = AsyncMock(return_value=LLMResponse(content="whole"))

    async def stream(self, messages, temperature=None, max_tokens=None):
        for chunk in self.chunks:
            yield chunk


def test_sender_rejects_unknown_and_disabled_profiles(sender_settings):
    """Test profile validation in the sender."""
    sender = LLMSender(sender_settings)

    with pytest.raises(ValueError):
        sender.get_client("missing", "gpt-4o")
    with pytest.raises(ValueError):
        sender.get_client("off", "gpt-4o")
    assert sender.get_client("main", "gpt-4o") is sender.get_client("main", "gpt-4o")


@pytest.mark.asyncio
async def test_sender_streams_and_assembles(sender_settings):
    """Test streamed chunks reach the callback and form the response."""
    sender = LLMSender(sender_settings)
    sender._clients[("main", "gpt-4o")] = ScriptedLLM([
        StreamChunk("hmm", is_reasoning=True),
        StreamChunk("Hel"),
        StreamChunk("lo"),
        StreamChunk("", usage=Usage(4, 2, 6)),
    ])
    seen = []

    response = await sender.send_request(
        RequestOptions(profile_id="main", model_id="gpt-4o", stream=True),
        on_chunk=lambda text, is_reasoning: seen.append((text, is_reasoning)),
    )

    assert seen == [("hmm", True), ("Hel", False), ("lo", False)]
    assert response.content == "Hello"
    assert response.reasoning_content == "hmm"
    assert response.usage == Usage(4, 2, 6)


@pytest.mark.asyncio
async def test_sender_awaits_async_callback(sender_settings):
    """Test coroutine callbacks are awaited."""
    sender = LLMSender(sender_settings)
    sender._clients[("main", "gpt-4o")] = ScriptedLLM([StreamChunk("x")])
    callback = AsyncMock()

    await sender.send_request(RequestOptions(profile_id="main", model_id="gpt-4o", stream=True), callback)

    callback.assert_awaited_once_with("x", False)


@pytest.mark.asyncio
async def test_sender_non_stream_uses_generate(sender_settings):
    """Test one-shot requests call generate."""
    sender = LLMSender(sender_settings)
    client = ScriptedLLM([])
    sender._clients[("main", "gpt-4o")] = client

    response = await sender.send_request(
        RequestOptions(profile_id="main", model_id="gpt-4o", temperature=0.3, max_tokens=10)
    )

    assert response.content == "whole"
    client.generate.assert_awaited_once_with([], temperature=0.3, max_tokens=10)
