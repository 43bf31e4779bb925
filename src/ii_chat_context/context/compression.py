"""
Summary-based context compression.

When the visible history on the active path grows past the configured
thresholds, the oldest batch of messages is summarized by the model and a
compression node carrying the summary is spliced into the tree right after
the batch. The compressed nodes stay in the tree; the compression node
lists their ids so later passes and the context builder skip them.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from ..config import (
    CompressionConfig,
    Settings,
    get_settings,
    resolve_compression_config,
)
from ..conversation.nodes import ConversationNode, ConversationSession, NodeRole, NodeStatus
from ..conversation.tree import add_node_to_session, create_node, get_node_path, reparent_node
from ..llm.base import LLMMessage, ModelRequestSender, RequestOptions
from ..tokens import EstimatingTokenCounter, TokenCounter, count_tokens_safe
from .builder import path_key
from .presets import AgentConfig

if TYPE_CHECKING:
    from .builder import ContextBuilder, ContextPreview

logger = structlog.get_logger()

SUMMARY_TEMPERATURE = 0.3
SUMMARY_MAX_TOKENS = 1000


class SummarizationError(Exception):
    """Raised when a summary cannot be generated."""


class CompressionState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    SUMMARIZING = "summarizing"
    SPLICING = "splicing"


@dataclass
class ContextStats:
    """Size of the visible history used for the compression decision."""

    total_tokens: int
    message_count: int
    history_count: int


def hidden_node_ids(path: list[ConversationNode]) -> set[str]:
    """Ids covered by enabled compression nodes on the path."""
    hidden: set[str] = set()
    for node in path:
        if node.is_enabled and node.is_compression_node:
            hidden.update(node.compressed_node_ids)
    return hidden


def compressible_nodes(path: list[ConversationNode]) -> list[ConversationNode]:
    """Visible, enabled, non-system, non-compression nodes on the path."""
    hidden = hidden_node_ids(path)
    return [
        node
        for node in path
        if node.id not in hidden
        and node.is_enabled
        and not node.is_compression_node
        and node.role != NodeRole.SYSTEM
    ]


def calculate_context_stats(
    path: list[ConversationNode],
    stats_snapshot: "ContextPreview | None" = None,
) -> ContextStats:
    """Measure the visible history, preferring a precomputed token total."""
    nodes = compressible_nodes(path)
    history_count = len(nodes)

    if stats_snapshot is not None:
        total_tokens = stats_snapshot.total_token_count
    else:
        hidden = hidden_node_ids(path)
        total_tokens = sum(
            node.token_count for node in path if node.id not in hidden and node.is_enabled
        )

    return ContextStats(
        total_tokens=total_tokens,
        message_count=history_count,
        history_count=history_count,
    )


def should_compress(stats: ContextStats, config: CompressionConfig) -> bool:
    if stats.history_count < config.min_history_count:
        return False

    over_tokens = stats.total_tokens > config.token_threshold
    over_count = stats.message_count > config.count_threshold

    if config.trigger_mode == "token":
        return over_tokens
    if config.trigger_mode == "count":
        return over_count
    if config.trigger_mode == "both":
        return over_tokens or over_count
    return False


def select_batch(path: list[ConversationNode], config: CompressionConfig) -> list[ConversationNode]:
    """Pick the oldest unprotected nodes to compress."""
    candidates = compressible_nodes(path)
    if len(candidates) <= config.protect_recent_count:
        logger.info(
            "Not enough candidates outside the protected window",
            candidate_count=len(candidates),
            protect_recent_count=config.protect_recent_count,
        )
        return []

    unprotected = candidates[: len(candidates) - config.protect_recent_count]
    return unprotected[: config.compress_count]


def build_summary_prompt(batch: list[ConversationNode], config: CompressionConfig) -> str:
    transcript = "\n\n".join(f"{node.role.value}: {node.content}" for node in batch)
    return config.prompt_template.replace("{context}", transcript)


class CompressionEngine:
    """Evaluates, summarizes and splices compression nodes for a session."""

    def __init__(
        self,
        sender: ModelRequestSender,
        settings: Settings | None = None,
        token_counter: TokenCounter | None = None,
        context_builder: "ContextBuilder | None" = None,
    ):
        self.sender = sender
        self.settings = settings or get_settings()
        self.token_counter = token_counter or EstimatingTokenCounter()
        self.context_builder = context_builder
        self.state = CompressionState.IDLE

    def effective_config(
        self,
        agent: AgentConfig | None = None,
        config: CompressionConfig | dict | None = None,
    ) -> CompressionConfig:
        return resolve_compression_config(
            self.settings.context_compression,
            agent.compression if agent else None,
            config,
        )

    def _stats_snapshot(
        self,
        session: ConversationSession,
        path: list[ConversationNode],
    ) -> "ContextPreview | None":
        """The builder's last preview, if it measured exactly this path."""
        if self.context_builder is None:
            return None
        snapshot = self.context_builder.last_stats.get(session.id)
        if snapshot is None:
            return None
        if snapshot.path_key != path_key(path):
            logger.debug("Ignoring stale context stats", session_id=session.id)
            self.context_builder.last_stats.pop(session.id, None)
            return None
        return snapshot

    def _resolve_summary_model(
        self,
        config: CompressionConfig,
        agent: AgentConfig | None,
    ) -> tuple[str, str]:
        if config.summary_model is not None:
            return config.summary_model.profile_id, config.summary_model.model_id
        if agent is not None:
            return agent.profile_id, agent.model_id
        for profile in self.settings.enabled_profiles:
            if profile.models:
                return profile.id, profile.models[0].id
        raise SummarizationError("No model available for summary generation")

    async def generate_summary(
        self,
        batch: list[ConversationNode],
        config: CompressionConfig,
        agent: AgentConfig | None = None,
    ) -> str:
        """Ask the model for a summary of the batch."""
        profile_id, model_id = self._resolve_summary_model(config, agent)
        prompt = build_summary_prompt(batch, config)

        logger.info(
            "Generating summary",
            message_count=len(batch),
            profile_id=profile_id,
            model_id=model_id,
        )

        try:
            response = await self.sender.send_request(
                RequestOptions(
                    profile_id=profile_id,
                    model_id=model_id,
                    messages=[LLMMessage(role="user", content=prompt)],
                    temperature=SUMMARY_TEMPERATURE,
                    max_tokens=SUMMARY_MAX_TOKENS,
                )
            )
        except Exception as e:
            raise SummarizationError(f"Summary request failed: {e}") from e

        summary = (response.content or "").strip()
        if not summary:
            raise SummarizationError("Summary request returned empty content")
        return summary

    async def compress_nodes(
        self,
        session: ConversationSession,
        batch: list[ConversationNode],
        summary: str,
        config: CompressionConfig,
        model_id: str = "",
    ) -> ConversationNode | None:
        """Insert a compression node after the batch and move its children under it."""
        if not batch:
            return None

        last_node = batch[-1]
        token_result = await count_tokens_safe(self.token_counter, summary, model_id)

        compression_config: dict[str, Any] = {
            "trigger_mode": config.trigger_mode,
            "thresholds": {
                "token_threshold": config.token_threshold,
                "count_threshold": config.count_threshold,
            },
            "summary_role": config.summary_role,
        }
        summary_node = create_node(
            config.summary_role,
            content=summary,
            parent_id=last_node.id,
            status=NodeStatus.COMPLETE,
            metadata={
                "is_compression_node": True,
                "compressed_node_ids": [node.id for node in batch],
                "compression_timestamp": int(time.time() * 1000),
                "original_token_count": sum(node.token_count for node in batch),
                "original_message_count": len(batch),
                "compression_config": compression_config,
                "token_count": token_result.count,
            },
        )

        # Inserting the node appends to last_node.children_ids
        children_to_transfer = list(last_node.children_ids)
        if not add_node_to_session(session, summary_node):
            return None

        for child_id in children_to_transfer:
            reparent_node(session, child_id, summary_node.id)

        if session.active_leaf_id in summary_node.compressed_node_ids:
            session.active_leaf_id = summary_node.id

        session.touch()
        logger.info(
            "Compression node inserted",
            session_id=session.id,
            summary_node_id=summary_node.id,
            compressed_count=len(batch),
            transferred_children=len(children_to_transfer),
        )
        return summary_node

    async def _execute(
        self,
        session: ConversationSession,
        path: list[ConversationNode],
        config: CompressionConfig,
        agent: AgentConfig | None,
    ) -> bool:
        batch = select_batch(path, config)
        if not batch:
            return False

        self.state = CompressionState.SUMMARIZING
        try:
            summary = await self.generate_summary(batch, config, agent)
        except SummarizationError as e:
            logger.error(
                "Compression aborted: summary generation failed",
                session_id=session.id,
                batch_size=len(batch),
                error=str(e),
            )
            return False

        self.state = CompressionState.SPLICING
        model_id = agent.model_id if agent else ""
        node = await self.compress_nodes(session, batch, summary, config, model_id)
        if node is None:
            return False

        if self.context_builder is not None:
            self.context_builder.last_stats.pop(session.id, None)
        return True

    async def check_and_compress(
        self,
        session: ConversationSession,
        config: CompressionConfig | dict | None = None,
        agent: AgentConfig | None = None,
    ) -> bool:
        """Compress the oldest history batch if thresholds are crossed."""
        effective = self.effective_config(agent, config)
        if not effective.enabled:
            return False

        try:
            self.state = CompressionState.EVALUATING
            path = get_node_path(session, session.active_leaf_id)
            stats = calculate_context_stats(path, self._stats_snapshot(session, path))

            if not should_compress(stats, effective):
                logger.debug(
                    "Compression not needed",
                    session_id=session.id,
                    total_tokens=stats.total_tokens,
                    history_count=stats.history_count,
                )
                return False

            logger.info(
                "Context compression triggered",
                session_id=session.id,
                total_tokens=stats.total_tokens,
                message_count=stats.message_count,
                trigger_mode=effective.trigger_mode,
            )
            return await self._execute(session, path, effective, agent)
        finally:
            self.state = CompressionState.IDLE

    async def manual_compress(
        self,
        session: ConversationSession,
        agent: AgentConfig | None = None,
    ) -> bool:
        """Compress one batch regardless of thresholds."""
        effective = self.effective_config(agent)
        try:
            self.state = CompressionState.EVALUATING
            path = get_node_path(session, session.active_leaf_id)
            logger.info("Manual context compression", session_id=session.id)
            return await self._execute(session, path, effective, agent)
        finally:
            self.state = CompressionState.IDLE
