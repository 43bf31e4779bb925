"""
Token counting.

The core only depends on the TokenCounter interface. The default
implementation is a character-based estimator that never raises, so
unknown model ids fall back to estimation.
"""

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()

# Approximate characters per token for latin text
CHARS_PER_TOKEN = 4

# CJK ideographs, kana and hangul are roughly one token each
_CJK_PATTERN = re.compile("[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff]")


@dataclass
class TokenCount:
    """Result of a token calculation."""

    count: int
    is_estimated: bool = True
    tokenizer_name: str = "estimate"


class TokenCounter(ABC):
    """Token counting service."""

    @abstractmethod
    async def calculate_tokens(self, text: str, model_id: str) -> TokenCount:
        """Count tokens in text for the given model."""
        pass


def estimate_text_tokens(text: str) -> int:
    """Estimate the token count of a string."""
    if not text:
        return 0
    cjk_count = len(_CJK_PATTERN.findall(text))
    other_chars = len(text) - cjk_count
    return cjk_count + math.ceil(other_chars / CHARS_PER_TOKEN)


class EstimatingTokenCounter(TokenCounter):
    """Heuristic token counter used when no tokenizer is available."""

    async def calculate_tokens(self, text: str, model_id: str) -> TokenCount:
        return TokenCount(count=estimate_text_tokens(text or ""))


def content_text(content: str | list[dict[str, Any]]) -> str:
    """Concatenate the text parts of message content."""
    if isinstance(content, str):
        return content
    return "".join(
        part.get("text") or ""
        for part in content
        if part.get("type") == "text"
    )


async def count_tokens_safe(counter: TokenCounter, text: str, model_id: str) -> TokenCount:
    """Count tokens, treating a counter failure as zero tokens."""
    try:
        return await counter.calculate_tokens(text, model_id)
    except Exception as e:
        logger.warning("Token calculation failed", model_id=model_id, error=str(e))
        return TokenCount(count=0)
