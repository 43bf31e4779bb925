"""
Integration of model output into the conversation tree.

Streamed chunks are buffered per node and joined on demand, so each chunk
costs an append. The buffers are written back to the node every
SYNC_EVERY_CHUNKS chunks, so node.content trails the stream by at most that
many chunks; live_content() and live_reasoning() read the exact text.
finalize() and on_error() are the two terminal edges of a node's generation
and drop the buffers.
"""

import asyncio
import time
from typing import Callable

import structlog

from ..config import Settings, get_settings
from ..llm.base import LLMMessage, LLMResponse, RequestCancelledError, Usage
from ..tokens import EstimatingTokenCounter, TokenCounter
from .inline_data import AttachmentSink, process_inline_data
from .nodes import ConversationNode, ConversationSession, NodeStatus
from .tree import find_display_agent_id

logger = structlog.get_logger()

CANCELLED_MARKER = "cancelled"
SYNC_EVERY_CHUNKS = 16


def now_ms() -> int:
    return int(time.time() * 1000)


def is_cancellation(error: BaseException) -> bool:
    return isinstance(error, (asyncio.CancelledError, RequestCancelledError))


def usage_is_unreliable(usage: Usage | None) -> bool:
    return usage is None or usage.is_empty


def prompt_text(messages: list[LLMMessage]) -> str:
    """Text of all messages joined by newlines; only text parts of multimodal content."""
    pieces: list[str] = []
    for message in messages:
        if isinstance(message.content, str):
            pieces.append(message.content)
        else:
            pieces.extend(
                part["text"]
                for part in message.content
                if part.get("type") == "text" and part.get("text")
            )
    return "\n".join(pieces)


class ResponseIntegrator:
    """Applies streamed and final model output to assistant nodes."""

    def __init__(
        self,
        settings: Settings | None = None,
        token_counter: TokenCounter | None = None,
        attachment_sink: AttachmentSink | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings or get_settings()
        self.token_counter = token_counter or EstimatingTokenCounter()
        self.attachment_sink = attachment_sink
        self.clock = clock
        self._content: dict[str, list[str]] = {}
        self._reasoning: dict[str, list[str]] = {}

    def on_stream_chunk(self, node: ConversationNode, chunk: str, is_reasoning: bool = False) -> None:
        """Append one streamed chunk to the node."""
        if node.status.is_terminal:
            logger.debug("Ignoring chunk for finished node", node_id=node.id, status=node.status.value)
            self.discard(node)
            return
        if not chunk:
            return

        now = self.clock()
        metadata = node.metadata

        if "first_token_time" not in metadata:
            metadata["first_token_time"] = now
            node.transition(NodeStatus.STREAMING)

        if is_reasoning:
            buffer = self._reasoning.get(node.id)
            if buffer is None:
                buffer = self._reasoning[node.id] = [metadata.get("reasoning_content") or ""]
            if "reasoning_start_time" not in metadata:
                metadata["reasoning_start_time"] = now
                logger.debug("Reasoning started", node_id=node.id)
            buffer.append(chunk)
            if len(buffer) >= SYNC_EVERY_CHUNKS:
                self.sync(node)
            return

        buffer = self._content.get(node.id)
        if buffer is None:
            # First answer chunk while reasoning exists marks the reasoning end
            if (
                not node.content
                and "reasoning_start_time" in metadata
                and "reasoning_end_time" not in metadata
            ):
                metadata["reasoning_end_time"] = now
                logger.debug("Reasoning ended", node_id=node.id)
            buffer = self._content[node.id] = [node.content]
        buffer.append(chunk)
        if len(buffer) >= SYNC_EVERY_CHUNKS:
            self.sync(node)

    def live_content(self, node: ConversationNode) -> str:
        buffer = self._content.get(node.id)
        return "".join(buffer) if buffer is not None else node.content

    def live_reasoning(self, node: ConversationNode) -> str:
        buffer = self._reasoning.get(node.id)
        if buffer is not None:
            return "".join(buffer)
        return node.metadata.get("reasoning_content") or ""

    def sync(self, node: ConversationNode) -> None:
        """Write buffered chunks onto the node and keep buffering."""
        content = self._content.get(node.id)
        if content is not None:
            node.content = "".join(content)
            self._content[node.id] = [node.content]
        reasoning = self._reasoning.get(node.id)
        if reasoning is not None:
            node.metadata["reasoning_content"] = "".join(reasoning)
            self._reasoning[node.id] = [node.metadata["reasoning_content"]]

    def flush(self, node: ConversationNode) -> None:
        """Write buffered chunks back onto the node and drop the buffers."""
        self.sync(node)
        self.discard(node)

    def discard(self, node: ConversationNode) -> None:
        self._content.pop(node.id, None)
        self._reasoning.pop(node.id, None)

    async def validate_and_fix_usage(
        self,
        response: LLMResponse,
        model_id: str,
        messages: list[LLMMessage],
    ) -> None:
        """Recompute usage locally when the provider's numbers are unusable."""
        if not usage_is_unreliable(response.usage) or not (response.content or "").strip():
            return

        logger.warning(
            "Provider usage is unreliable, recomputing locally",
            original_usage=response.usage.to_dict() if response.usage else None,
            content_length=len(response.content),
            model_id=model_id,
        )
        try:
            completion = await self.token_counter.calculate_tokens(response.content, model_id)
            prompt = await self.token_counter.calculate_tokens(prompt_text(messages), model_id)
        except Exception as e:
            logger.error("Local token calculation failed, keeping provider usage", model_id=model_id, error=str(e))
            return

        response.usage = Usage(
            prompt_tokens=prompt.count,
            completion_tokens=completion.count,
            total_tokens=prompt.count + completion.count,
        )
        logger.info(
            "Usage recomputed locally",
            usage=response.usage.to_dict(),
            is_estimated=prompt.is_estimated or completion.is_estimated,
            tokenizer=completion.tokenizer_name,
        )

    async def finalize(
        self,
        session: ConversationSession,
        node: ConversationNode,
        response: LLMResponse,
        agent_id: str,
        messages: list[LLMMessage] | None = None,
        model_id: str = "",
    ) -> None:
        """Complete the node with the final response."""
        self.flush(node)
        if node.status == NodeStatus.ERROR:
            logger.warning("Not finalizing a node that already failed", node_id=node.id)
            return

        await self.validate_and_fix_usage(response, model_id, messages or [])

        content = response.content or node.content
        try:
            result = await process_inline_data(
                content,
                self.settings.inline_data_threshold_kb,
                self.attachment_sink,
            )
            content = result.processed_text
            if result.new_attachments:
                node.attachments.extend(result.new_attachments)
                logger.info(
                    "Inline data in response converted to attachments",
                    node_id=node.id,
                    attachment_count=len(result.new_attachments),
                )
        except Exception as e:
            logger.warning("Inline data processing failed, keeping raw content", node_id=node.id, error=str(e))

        node.content = content
        node.transition(NodeStatus.COMPLETE)

        metadata = node.metadata
        request_end_time = self.clock()
        content_tokens = response.usage.completion_tokens if response.usage else None

        tokens_per_second = None
        first_token_time = metadata.get("first_token_time")
        if content_tokens and first_token_time:
            generation_ms = request_end_time - first_token_time
            if generation_ms > 0:
                tokens_per_second = round(content_tokens / generation_ms * 1000, 2)

        reasoning = response.reasoning_content or metadata.get("reasoning_content")
        metadata.update(
            {
                "usage": response.usage.to_dict() if response.usage else None,
                "content_tokens": content_tokens,
                "reasoning_content": reasoning,
                "request_end_time": request_end_time,
                "tokens_per_second": tokens_per_second,
                "agent_id": agent_id,
            }
        )
        if content_tokens:
            metadata["token_count"] = content_tokens
        if reasoning:
            metadata.setdefault("reasoning_start_time", first_token_time or request_end_time)
            metadata.setdefault("reasoning_end_time", request_end_time)

        session.agent_usage[agent_id] = session.agent_usage.get(agent_id, 0) + 1
        session.display_agent_id = find_display_agent_id(session)
        session.touch()

        logger.info(
            "Response finalized",
            session_id=session.id,
            node_id=node.id,
            agent_id=agent_id,
            content_tokens=content_tokens,
            tokens_per_second=tokens_per_second,
        )

    def on_error(self, node: ConversationNode, error: BaseException, context: str = "") -> None:
        """Move the node to its error state; never raises."""
        try:
            self.flush(node)
            if not node.transition(NodeStatus.ERROR):
                return
            if is_cancellation(error):
                node.metadata["error"] = CANCELLED_MARKER
                node.metadata["is_cancelled"] = True
                logger.info("Generation cancelled", node_id=node.id, context=context)
            else:
                node.metadata["error"] = str(error) or type(error).__name__
                logger.error("Generation failed", node_id=node.id, context=context, error=str(error))
        except Exception as e:
            logger.error("Failed to record generation error", node_id=node.id, error=str(e))
