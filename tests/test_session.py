"""
Tests for session lifecycle and persistence.
"""

from datetime import datetime

import pytest

from ii_chat_context.conversation import (
    SessionManager,
    SessionStore,
    add_node_to_session,
    create_node,
    get_node_path,
)
from ii_chat_context.conversation.nodes import NodeRole
from ii_chat_context.conversation.session import default_session_name
from ii_chat_context.models import init_database


async def _store(tmp_path) -> SessionStore:
    session_factory = await init_database(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}")
    return SessionStore(session_factory)


def test_create_session_has_root_only():
    """Test a new session holds just an empty system root."""
    session = SessionManager().create_session(agent_id="agent-1")

    root = session.nodes[session.root_node_id]
    assert len(session.nodes) == 1
    assert root.role == NodeRole.SYSTEM
    assert root.content == ""
    assert session.active_leaf_id == root.id
    assert session.display_agent_id == "agent-1"
    assert session.name.startswith("Session ")


def test_default_session_name():
    """Test the timestamped default name."""
    assert default_session_name(datetime(2024, 5, 6, 7, 8, 9)) == "Session 2024-05-06 07:08:09"


def test_switch_branch_updates_leaf_and_agent(make_session):
    """Test switching to another branch moves the leaf and display agent."""
    manager = SessionManager()
    session = make_session(2)
    user, assistant = get_node_path(session, session.active_leaf_id)[1:]
    assistant.metadata["agent_id"] = "agent-a"
    alt = create_node(NodeRole.ASSISTANT, content="alt", parent_id=user.id, metadata={"agent_id": "agent-b"})
    add_node_to_session(session, alt)

    assert manager.switch_branch(session, alt.id) is True
    assert session.active_leaf_id == alt.id
    assert session.display_agent_id == "agent-b"

    assert manager.switch_branch(session, "missing") is False
    assert session.active_leaf_id == alt.id


@pytest.mark.asyncio
async def test_manager_without_store_raises():
    """Test persistence calls fail loudly without a store."""
    with pytest.raises(RuntimeError):
        await SessionManager().load_session("any")


@pytest.mark.asyncio
async def test_store_round_trip(tmp_path, make_session):
    """Test a saved session loads back identical."""
    store = await _store(tmp_path)
    session = make_session(4)
    session.nodes[session.active_leaf_id].metadata["usage"] = {"prompt_tokens": 3}
    manager = SessionManager(store)

    await manager.save_session(session)
    loaded = await manager.load_session(session.id)

    assert loaded is not None
    assert loaded.to_dict() == session.to_dict()


@pytest.mark.asyncio
async def test_store_save_overwrites(tmp_path, make_session):
    """Test saving twice updates the stored row."""
    store = await _store(tmp_path)
    session = make_session(2)
    await store.save_session(session)

    session.name = "renamed"
    session.touch()
    await store.save_session(session)

    summaries = await store.list_sessions()
    assert [s.name for s in summaries] == ["renamed"]
    assert summaries[0].node_count == 3


@pytest.mark.asyncio
async def test_store_unknown_session(tmp_path):
    """Test loading an unknown id returns None."""
    store = await _store(tmp_path)
    assert await store.load_session("nope") is None


@pytest.mark.asyncio
async def test_store_list_and_delete(tmp_path, make_session):
    """Test listing and deleting stored sessions."""
    store = await _store(tmp_path)
    first = make_session(1)
    second = make_session(2)
    await store.save_session(first)
    await store.save_session(second)

    ids = {s.id for s in await store.list_sessions()}
    assert ids == {first.id, second.id}

    assert await store.delete_session(first.id) is True
    assert await store.delete_session(first.id) is False
    assert [s.id for s in await store.list_sessions()] == [second.id]
