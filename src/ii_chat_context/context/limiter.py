"""
Token-window limiting for session history.

Messages are kept newest-first while they fit the remaining budget.
Messages that do not fit are truncated rather than dropped, so the model
still sees that the turn happened.
"""

import asyncio
from dataclasses import replace

import structlog

from ..config import ContextManagementConfig
from ..llm.base import LLMMessage, MessageContent
from ..tokens import TokenCounter, content_text, count_tokens_safe

logger = structlog.get_logger()

TRUNCATION_SUFFIX = "...[已截断]"
SHORT_TRUNCATION_SUFFIX = "[已截断]"
TRUNCATED_PLACEHOLDER = "[消息已截断]"


def truncate_text(text: str, retained_characters: int) -> str:
    """Cut text down to its retained prefix plus a truncation marker."""
    if retained_characters <= 0:
        return TRUNCATED_PLACEHOLDER
    if len(text) > retained_characters:
        return text[:retained_characters] + TRUNCATION_SUFFIX
    return text + SHORT_TRUNCATION_SUFFIX


def truncate_content(content: MessageContent, retained_characters: int) -> MessageContent:
    """Truncate message content; multimodal content keeps non-text parts as-is."""
    if isinstance(content, str):
        return truncate_text(content, retained_characters)
    return [
        {**part, "text": truncate_text(part["text"], retained_characters)}
        if part.get("type") == "text" and part.get("text")
        else part
        for part in content
    ]


async def count_message_tokens(
    messages: list[LLMMessage],
    model_id: str,
    token_counter: TokenCounter,
) -> list[int]:
    """Count the text tokens of each message concurrently."""
    results = await asyncio.gather(
        *(count_tokens_safe(token_counter, content_text(m.content), model_id) for m in messages)
    )
    return [r.count for r in results]


async def apply_context_limit(
    history: list[LLMMessage],
    fixed_messages: list[LLMMessage],
    context_management: ContextManagementConfig,
    model_id: str,
    token_counter: TokenCounter,
) -> list[LLMMessage]:
    """Fit session history into the token budget left after fixed messages."""
    fixed_tokens = sum(await count_message_tokens(fixed_messages, model_id, token_counter))
    available_tokens = context_management.max_context_tokens - fixed_tokens

    logger.info(
        "Applying context limit",
        max_context_tokens=context_management.max_context_tokens,
        fixed_tokens=fixed_tokens,
        available_tokens=available_tokens,
        history_count=len(history),
    )

    if available_tokens <= 0:
        logger.warning(
            "Fixed messages exhaust the context budget, dropping session history",
            fixed_tokens=fixed_tokens,
            max_context_tokens=context_management.max_context_tokens,
        )
        return []

    token_counts = await count_message_tokens(history, model_id, token_counter)

    used_tokens = 0
    kept: set[int] = set()
    for index in range(len(history) - 1, -1, -1):
        if used_tokens + token_counts[index] <= available_tokens:
            used_tokens += token_counts[index]
            kept.add(index)

    result = []
    for index, message in enumerate(history):
        if index in kept:
            result.append(message)
        else:
            result.append(
                replace(
                    message,
                    content=truncate_content(message.content, context_management.retained_characters),
                )
            )

    logger.info(
        "Context limit applied",
        kept_count=len(kept),
        truncated_count=len(history) - len(kept),
        used_tokens=used_tokens,
        available_tokens=available_tokens,
    )
    return result
