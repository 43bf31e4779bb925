"""
Tests for token estimation.
"""

import pytest

from ii_chat_context.tokens import (
    EstimatingTokenCounter,
    content_text,
    count_tokens_safe,
    estimate_text_tokens,
)


def test_estimate_empty():
    """Test that empty text costs nothing."""
    assert estimate_text_tokens("") == 0


def test_estimate_latin_text():
    """Test four characters per token for latin text."""
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2


def test_estimate_cjk_text():
    """Test that CJK characters count one token each."""
    assert estimate_text_tokens("你好世界") == 4
    assert estimate_text_tokens("你好abcd") == 3


def test_content_text_joins_text_parts():
    """Test that only text parts contribute to multimodal text."""
    content = [
        {"type": "text", "text": "hello "},
        {"type": "image", "data": "AAAA"},
        {"type": "text", "text": "world"},
    ]
    assert content_text(content) == "hello world"
    assert content_text("plain") == "plain"


@pytest.mark.asyncio
async def test_estimating_counter_never_raises_on_unknown_model():
    """Test the default counter accepts any model id."""
    result = await EstimatingTokenCounter().calculate_tokens("some text here", "no-such-model")
    assert result.count > 0
    assert result.is_estimated is True


@pytest.mark.asyncio
async def test_count_tokens_safe_swallows_errors():
    """Test that counter failures become zero tokens."""

    class Broken(EstimatingTokenCounter):
        async def calculate_tokens(self, text, model_id):
            raise ValueError("bad")

    result = await count_tokens_safe(Broken(), "text", "m")
    assert result.count == 0
