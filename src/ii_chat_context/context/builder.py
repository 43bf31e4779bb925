"""
Context assembly.

Turns the active tree path plus an agent's preset messages into the flat
ordered message list sent to the model:

    [system block] [presets before history slot] [history] [presets after slot]

The system block holds the system presets and the user profile. History
is the visible part of the path (compressed ranges replaced by their
summary node), optionally fitted into a token budget. Presets with a
depth are injected into the history that many messages from its end.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from ..config import Settings, get_settings, resolve_context_management
from ..conversation.nodes import ConversationNode, ConversationSession, NodeRole
from ..conversation.tree import get_node_path
from ..llm.base import LLMMessage, MessageContent
from ..macros import MacroService
from ..tokens import EstimatingTokenCounter, TokenCounter, content_text, count_tokens_safe
from .attachments import AssetConverter, DefaultAssetConverter, ModelCapabilities
from .limiter import apply_context_limit
from .presets import (
    AgentConfig,
    ChatHistorySlot,
    TextPreset,
    UserProfile,
    UserProfileSlot,
)

logger = structlog.get_logger()

USER_PROFILE_HEADING = "# User Profile"


@dataclass
class LlmContextData:
    """Messages ready to send plus assembly bookkeeping."""

    messages: list[LLMMessage]
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class SegmentStats:
    char_count: int = 0
    token_count: int = 0
    message_count: int = 0


@dataclass
class ContextPreview:
    """Assembled context with per-segment size statistics."""

    messages: list[LLMMessage]
    system_prompt: SegmentStats
    preset_messages: SegmentStats
    chat_history: SegmentStats
    total_char_count: int
    total_token_count: int
    is_estimated: bool
    model_id: str = ""
    path_key: tuple[str, ...] = ()


@dataclass
class _Assembly:
    system_block: list[LLMMessage]
    presets_before: list[LLMMessage]
    presets_after: list[LLMMessage]
    depth_injections: list[tuple[TextPreset, LLMMessage]]
    history: list[LLMMessage]
    history_limited: bool = False

    @property
    def fixed_messages(self) -> list[LLMMessage]:
        return [
            *self.system_block,
            *self.presets_before,
            *self.presets_after,
            *(msg for _, msg in self.depth_injections),
        ]

    @property
    def preset_messages(self) -> list[LLMMessage]:
        return [
            *self.presets_before,
            *self.presets_after,
            *(msg for _, msg in self.depth_injections),
        ]

    def messages(self) -> list[LLMMessage]:
        history = apply_depth_injections(self.history, self.depth_injections)
        return [*self.system_block, *self.presets_before, *history, *self.presets_after]


def path_key(path: list[ConversationNode]) -> tuple[str, ...]:
    """Ids of the enabled nodes on a path, used to tell whether a snapshot is still current."""
    return tuple(node.id for node in path if node.is_enabled)


def get_visible_history_nodes(path: list[ConversationNode]) -> list[ConversationNode]:
    """Path nodes that enter the history, with compressed ranges hidden."""
    hidden: set[str] = set()
    for node in path:
        if node.is_enabled and node.is_compression_node:
            hidden.update(node.compressed_node_ids)

    visible = []
    for node in path:
        if node.id in hidden or not node.is_enabled:
            continue
        if node.parent_id is None:
            continue
        if node.is_compression_node:
            visible.append(node)
            continue
        if node.role not in (NodeRole.USER, NodeRole.ASSISTANT):
            continue
        if not node.content and not node.attachments:
            continue
        visible.append(node)
    return visible


def apply_depth_injections(
    history: list[LLMMessage],
    injections: list[tuple[TextPreset, LLMMessage]],
) -> list[LLMMessage]:
    """Insert depth presets counted from the end of the history."""
    if not injections:
        return history

    groups: dict[int, list[tuple[TextPreset, LLMMessage]]] = {}
    for preset, message in injections:
        groups.setdefault(preset.depth or 0, []).append((preset, message))

    result = list(history)
    # Deepest first so earlier inserts do not shift later positions
    for depth in sorted(groups, reverse=True):
        group = sorted(groups[depth], key=lambda item: item[0].order)
        insert_at = max(0, len(result) - depth)
        result[insert_at:insert_at] = [message for _, message in group]
    return result


class ContextBuilder:
    """Builds model requests from a session path and an agent."""

    def __init__(
        self,
        settings: Settings | None = None,
        token_counter: TokenCounter | None = None,
        asset_converter: AssetConverter | None = None,
        macro_service: MacroService | None = None,
    ):
        self.settings = settings or get_settings()
        self.token_counter = token_counter or EstimatingTokenCounter()
        self.asset_converter = asset_converter or DefaultAssetConverter()
        self.macro_service = macro_service or MacroService()
        # Most recent preview per session id
        self.last_stats: dict[str, ContextPreview] = {}

    def _capabilities_for(self, agent: AgentConfig) -> ModelCapabilities:
        profile = self.settings.get_profile(agent.profile_id)
        model = profile.get_model(agent.model_id) if profile else None
        return ModelCapabilities.from_model(model)

    async def build_message_content(
        self,
        node: ConversationNode,
        capabilities: ModelCapabilities | None = None,
    ) -> MessageContent:
        """Text for plain nodes, a list of parts for nodes with attachments."""
        if not node.attachments:
            return node.content

        parts: list[dict[str, Any]] = []
        if node.content:
            parts.append({"type": "text", "text": node.content})

        converted = 0
        for attachment in node.attachments:
            try:
                part = await self.asset_converter.asset_to_content_part(attachment, capabilities)
            except Exception as e:
                logger.warning(
                    "Attachment conversion failed, skipping",
                    node_id=node.id,
                    attachment_id=attachment.id,
                    error=str(e),
                )
                continue
            if part is None:
                continue
            parts.append(part)
            converted += 1

        if not converted:
            return node.content

        logger.debug(
            "Built multimodal message",
            node_id=node.id,
            attachment_count=len(node.attachments),
            part_count=len(parts),
        )
        return parts

    async def build_history(
        self,
        path: list[ConversationNode],
        capabilities: ModelCapabilities | None = None,
    ) -> list[LLMMessage]:
        nodes = get_visible_history_nodes(path)
        contents = await asyncio.gather(
            *(self.build_message_content(node, capabilities) for node in nodes)
        )
        return [
            LLMMessage(
                role=node.role.value,
                content=content,
                source_type="compression" if node.is_compression_node else "session_history",
                source_id=node.id,
            )
            for node, content in zip(nodes, contents)
        ]

    async def _assemble_presets(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        user_profile: UserProfile | None,
        timestamp: datetime | None,
    ) -> tuple[list[LLMMessage], list[LLMMessage], list[LLMMessage], list[tuple[TextPreset, LLMMessage]]]:
        presets = [p for p in agent.preset_messages if p.is_enabled]
        context = self.macro_service.build_context(
            session=session,
            agent=agent,
            user_profile=user_profile,
            timestamp=timestamp,
        )

        text_presets = [p for p in presets if isinstance(p, TextPreset)]
        processed = await self.macro_service.process_macros_batch(
            [p.content for p in text_presets], context
        )
        contents = {id(p): text for p, text in zip(text_presets, processed)}

        profile_message = None
        if user_profile is not None:
            profile_text = await self.macro_service.process_macros(
                f"{USER_PROFILE_HEADING}\n{user_profile.content}", context
            )
            profile_message = LLMMessage(
                role="system",
                content=profile_text,
                source_type="user_profile",
                source_id=user_profile.id,
            )

        system_block: list[LLMMessage] = []
        before: list[LLMMessage] = []
        after: list[LLMMessage] = []
        injections: list[tuple[TextPreset, LLMMessage]] = []
        has_profile_slot = False
        has_history_slot = False

        for index, preset in enumerate(presets):
            if isinstance(preset, UserProfileSlot):
                has_profile_slot = True
                if profile_message is not None:
                    system_block.append(profile_message)
            elif isinstance(preset, ChatHistorySlot):
                has_history_slot = True
            elif isinstance(preset, TextPreset):
                message = LLMMessage(
                    role=preset.role,
                    content=contents[id(preset)],
                    source_type="depth_injection" if preset.is_depth_injection else "agent_preset",
                    source_id=preset.id or str(index),
                )
                if preset.is_depth_injection:
                    injections.append((preset, message))
                elif preset.role == "system":
                    system_block.append(message)
                elif has_history_slot:
                    after.append(message)
                else:
                    before.append(message)

        if not has_profile_slot and profile_message is not None:
            system_block.append(profile_message)

        return system_block, before, after, injections

    async def _assemble(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        path: list[ConversationNode] | None,
        user_profile: UserProfile | None,
        capabilities: ModelCapabilities | None,
        timestamp: datetime | None,
    ) -> _Assembly:
        if path is None:
            path = get_node_path(session, session.active_leaf_id)
        if capabilities is None:
            capabilities = self._capabilities_for(agent)

        history = await self.build_history(path, capabilities)
        system_block, before, after, injections = await self._assemble_presets(
            session, agent, user_profile, timestamp
        )
        assembly = _Assembly(
            system_block=system_block,
            presets_before=before,
            presets_after=after,
            depth_injections=injections,
            history=history,
        )

        context_management = resolve_context_management(
            self.settings.context_management, agent.context_management
        )
        if context_management.enabled and context_management.max_context_tokens > 0:
            assembly.history = await apply_context_limit(
                history,
                assembly.fixed_messages,
                context_management,
                agent.model_id,
                self.token_counter,
            )
            assembly.history_limited = True

        return assembly

    async def build_llm_context(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        path: list[ConversationNode] | None = None,
        user_profile: UserProfile | None = None,
        capabilities: ModelCapabilities | None = None,
        timestamp: datetime | None = None,
    ) -> LlmContextData:
        """Assemble the ordered message list for a request."""
        assembly = await self._assemble(session, agent, path, user_profile, capabilities, timestamp)
        messages = assembly.messages()

        logger.info(
            "Built LLM context",
            session_id=session.id,
            agent_id=agent.id,
            system_count=len(assembly.system_block),
            preset_count=len(assembly.preset_messages),
            history_count=len(assembly.history),
            total_count=len(messages),
            history_limited=assembly.history_limited,
        )
        return LlmContextData(
            messages=messages,
            meta={
                "system_count": len(assembly.system_block),
                "preset_count": len(assembly.preset_messages),
                "history_count": len(assembly.history),
                "history_limited": assembly.history_limited,
                "model_id": agent.model_id,
            },
        )

    async def _segment_stats(self, messages: list[LLMMessage], model_id: str) -> tuple[SegmentStats, bool]:
        texts = [content_text(m.content) for m in messages]
        counts = await asyncio.gather(
            *(count_tokens_safe(self.token_counter, text, model_id) for text in texts)
        )
        stats = SegmentStats(
            char_count=sum(len(text) for text in texts),
            token_count=sum(c.count for c in counts),
            message_count=len(messages),
        )
        return stats, any(c.is_estimated for c in counts)

    async def preview_context(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        path: list[ConversationNode] | None = None,
        user_profile: UserProfile | None = None,
        capabilities: ModelCapabilities | None = None,
        timestamp: datetime | None = None,
    ) -> ContextPreview:
        """Assemble the context and report its size per segment."""
        if path is None:
            path = get_node_path(session, session.active_leaf_id)
        assembly = await self._assemble(session, agent, path, user_profile, capabilities, timestamp)

        system_stats, system_estimated = await self._segment_stats(assembly.system_block, agent.model_id)
        preset_stats, preset_estimated = await self._segment_stats(assembly.preset_messages, agent.model_id)
        history_stats, history_estimated = await self._segment_stats(assembly.history, agent.model_id)

        preview = ContextPreview(
            messages=assembly.messages(),
            system_prompt=system_stats,
            preset_messages=preset_stats,
            chat_history=history_stats,
            total_char_count=system_stats.char_count + preset_stats.char_count + history_stats.char_count,
            total_token_count=system_stats.token_count + preset_stats.token_count + history_stats.token_count,
            is_estimated=system_estimated or preset_estimated or history_estimated,
            model_id=agent.model_id,
            path_key=path_key(path),
        )
        self.last_stats[session.id] = preview

        logger.debug(
            "Context preview computed",
            session_id=session.id,
            total_token_count=preview.total_token_count,
            total_char_count=preview.total_char_count,
            is_estimated=preview.is_estimated,
        )
        return preview
