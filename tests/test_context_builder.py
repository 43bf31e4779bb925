"""
Tests for context assembly.
"""

import pytest

from ii_chat_context.context import (
    AgentConfig,
    AssetConverter,
    ChatHistorySlot,
    ContextBuilder,
    TextPreset,
    UserProfile,
    UserProfileSlot,
)
from ii_chat_context.context.builder import apply_depth_injections
from ii_chat_context.conversation import add_node_to_session, create_node, get_node_path, reparent_node
from ii_chat_context.conversation.nodes import Attachment, NodeRole
from ii_chat_context.llm.base import LLMMessage


def _agent(presets, **kwargs):
    return AgentConfig(
        id="agent-1",
        name="Aria",
        profile_id="openai",
        model_id="gpt-4o",
        preset_messages=presets,
        **kwargs,
    )


def _contents(messages):
    return [m.content for m in messages]


@pytest.fixture
def builder(settings):
    return ContextBuilder(settings=settings)


@pytest.mark.asyncio
async def test_history_slot_splits_presets(builder, make_session):
    """Test presets after the history slot follow the history."""
    session = make_session(2)
    agent = _agent([
        TextPreset(role="system", content="sys"),
        TextPreset(role="user", content="before"),
        ChatHistorySlot(),
        TextPreset(role="user", content="after"),
    ])

    context = await builder.build_llm_context(session, agent)

    assert _contents(context.messages) == ["sys", "before", "message 0", "message 1", "after"]
    assert [m.role for m in context.messages] == ["system", "user", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_without_history_slot_history_goes_last(builder, make_session):
    """Test history is appended after all presets when there is no slot."""
    session = make_session(2)
    agent = _agent([
        TextPreset(role="user", content="first"),
        TextPreset(role="system", content="sys"),
        TextPreset(role="assistant", content="second"),
    ])

    context = await builder.build_llm_context(session, agent)

    assert _contents(context.messages) == ["sys", "first", "second", "message 0", "message 1"]


@pytest.mark.asyncio
async def test_disabled_presets_are_skipped(builder, make_session):
    """Test disabled preset entries do not reach the request."""
    session = make_session(2)
    agent = _agent([
        TextPreset(role="system", content="on"),
        TextPreset(role="system", content="off", is_enabled=False),
        ChatHistorySlot(is_enabled=False),
        TextPreset(role="user", content="tail"),
    ])

    context = await builder.build_llm_context(session, agent)

    assert _contents(context.messages) == ["on", "tail", "message 0", "message 1"]


@pytest.mark.asyncio
async def test_user_profile_placed_at_slot(builder, make_session):
    """Test the profile lands where its slot sits in the system block."""
    session = make_session(2)
    profile = UserProfile(id="u1", name="Sam", content="Likes tea")
    agent = _agent([
        TextPreset(role="system", content="a"),
        UserProfileSlot(),
        TextPreset(role="system", content="b"),
    ])

    context = await builder.build_llm_context(session, agent, user_profile=profile)

    assert _contents(context.messages)[:3] == ["a", "# User Profile\nLikes tea", "b"]
    assert context.messages[1].source_type == "user_profile"


@pytest.mark.asyncio
async def test_user_profile_appended_without_slot(builder, make_session):
    """Test the profile ends the system block when there is no slot."""
    session = make_session(2)
    profile = UserProfile(id="u1", name="Sam", content="Likes tea")
    agent = _agent([
        TextPreset(role="system", content="a"),
        TextPreset(role="user", content="hello"),
        TextPreset(role="system", content="b"),
    ])

    context = await builder.build_llm_context(session, agent, user_profile=profile)

    assert _contents(context.messages)[:4] == ["a", "b", "# User Profile\nLikes tea", "hello"]


@pytest.mark.asyncio
async def test_presets_expand_macros(builder, make_session):
    """Test preset text goes through the macro engine."""
    session = make_session(2)
    profile = UserProfile(id="u1", name="Sam")
    agent = _agent([TextPreset(role="system", content="You are {{char}}, talking to {{user}}.")])

    context = await builder.build_llm_context(session, agent, user_profile=profile)

    assert context.messages[0].content == "You are Aria, talking to Sam."


@pytest.mark.asyncio
async def test_depth_injection_counts_from_end(builder, make_session):
    """Test depth presets are inserted relative to the end of the history."""
    session = make_session(4)
    agent = _agent([
        TextPreset(role="system", content="late", depth=1, order=200),
        TextPreset(role="system", content="early", depth=1, order=50),
        TextPreset(role="system", content="deep", depth=10),
    ])

    context = await builder.build_llm_context(session, agent)

    assert _contents(context.messages) == [
        "deep",
        "message 0",
        "message 1",
        "message 2",
        "early",
        "late",
        "message 3",
    ]
    assert context.messages[4].source_type == "depth_injection"


def test_apply_depth_injections_zero_depth_appends():
    """Test depth zero lands after the last history message."""
    history = [LLMMessage(role="user", content="hi")]
    preset = TextPreset(role="system", content="note", depth=0)
    result = apply_depth_injections(history, [(preset, LLMMessage(role="system", content="note"))])
    assert _contents(result) == ["hi", "note"]


@pytest.mark.asyncio
async def test_hidden_and_empty_nodes_excluded(builder, make_session):
    """Test disabled and empty nodes never reach the history."""
    session = make_session(4)
    path = get_node_path(session, session.active_leaf_id)
    path[2].is_enabled = False
    path[3].content = ""

    context = await builder.build_llm_context(session, _agent([]))

    assert _contents(context.messages) == ["message 0", "message 3"]


@pytest.mark.asyncio
async def test_compression_node_replaces_range(builder, make_session):
    """Test a compression node stands in for the nodes it covers."""
    session = make_session(4)
    path = get_node_path(session, session.active_leaf_id)
    summary = create_node(
        NodeRole.SYSTEM,
        content="summary of the start",
        parent_id=path[2].id,
        metadata={"is_compression_node": True, "compressed_node_ids": [path[1].id, path[2].id]},
    )
    add_node_to_session(session, summary)
    reparent_node(session, path[3].id, summary.id)

    context = await builder.build_llm_context(session, _agent([]))

    assert _contents(context.messages) == ["summary of the start", "message 2", "message 3"]
    assert context.messages[0].role == "system"
    assert context.messages[0].source_type == "compression"


@pytest.mark.asyncio
async def test_disabled_compression_node_restores_range(builder, make_session):
    """Test that disabling a compression node brings the original messages back."""
    session = make_session(2)
    path = get_node_path(session, session.active_leaf_id)
    summary = create_node(
        NodeRole.SYSTEM,
        content="summary",
        parent_id=path[2].id,
        is_enabled=False,
        metadata={"is_compression_node": True, "compressed_node_ids": [path[1].id, path[2].id]},
    )
    add_node_to_session(session, summary)
    session.active_leaf_id = summary.id

    context = await builder.build_llm_context(session, _agent([]))

    assert _contents(context.messages) == ["message 0", "message 1"]


class RecordingConverter(AssetConverter):
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def asset_to_content_part(self, asset, capabilities=None):
        self.calls.append((asset.id, capabilities))
        if self.error:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_attachment_becomes_content_part(settings, make_session):
    """Test converted attachments follow the text part."""
    part = {"type": "image", "mime_type": "image/png", "data": "AAAA"}
    builder = ContextBuilder(settings=settings, asset_converter=RecordingConverter(result=part))
    session = make_session(1)
    session.nodes[session.active_leaf_id].attachments = [Attachment(id="a1", type="image")]

    context = await builder.build_llm_context(session, _agent([]))

    assert context.messages[0].content == [{"type": "text", "text": "message 0"}, part]


@pytest.mark.asyncio
async def test_attachment_failure_keeps_text(settings, make_session):
    """Test that a failing or skipped attachment keeps the message text."""
    session = make_session(1)
    session.nodes[session.active_leaf_id].attachments = [Attachment(id="a1", type="image")]

    for converter in (RecordingConverter(result=None), RecordingConverter(error=OSError("missing"))):
        builder = ContextBuilder(settings=settings, asset_converter=converter)
        context = await builder.build_llm_context(session, _agent([]))

        assert context.messages[0].content == "message 0"
        assert converter.calls[0][0] == "a1"


@pytest.mark.asyncio
async def test_capabilities_come_from_model_settings(settings, make_session):
    """Test the converter receives capabilities of the configured model."""
    settings.profiles[0].models[0].vision = False
    converter = RecordingConverter(result=None)
    builder = ContextBuilder(settings=settings, asset_converter=converter)
    session = make_session(1)
    session.nodes[session.active_leaf_id].attachments = [Attachment(id="a1", type="image")]

    await builder.build_llm_context(session, _agent([]))

    assert converter.calls[0][1].vision is False


@pytest.mark.asyncio
async def test_context_limit_applied_from_agent_override(builder, make_session):
    """Test the agent's context-management override truncates old history."""
    session = make_session(4)
    agent = _agent(
        [TextPreset(role="system", content="sys")],
        context_management={"enabled": True, "max_context_tokens": 4, "retained_characters": 4},
    )

    context = await builder.build_llm_context(session, agent)

    assert context.meta["history_limited"] is True
    assert context.messages[0].content == "sys"
    assert context.messages[1].content == "mess...[已截断]"
    assert context.messages[-1].content == "message 3"


@pytest.mark.asyncio
async def test_preview_reports_segments(builder, make_session):
    """Test preview statistics per segment and the stored snapshot."""
    session = make_session(2)
    profile = UserProfile(id="u1", content="x")
    agent = _agent([
        TextPreset(role="system", content="abcd"),
        TextPreset(role="user", content="efgh"),
    ])

    preview = await builder.preview_context(session, agent, user_profile=profile)

    assert preview.system_prompt.message_count == 2
    assert preview.preset_messages.message_count == 1
    assert preview.chat_history.message_count == 2
    assert preview.chat_history.char_count == len("message 0") + len("message 1")
    assert preview.total_char_count == (
        preview.system_prompt.char_count
        + preview.preset_messages.char_count
        + preview.chat_history.char_count
    )
    assert preview.is_estimated is True
    assert builder.last_stats[session.id] is preview
