"""
Session lifecycle: creation, branch switching, display-agent bookkeeping
and hand-off to the session store.
"""

from datetime import datetime
from uuid import uuid4

import structlog

from .nodes import ConversationSession, NodeRole
from .store import SessionStore, SessionSummary
from .tree import (
    add_node_to_session,
    create_node,
    find_display_agent_id,
    find_leaf,
    update_active_leaf,
)

logger = structlog.get_logger()


def default_session_name(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"Session {now.strftime('%Y-%m-%d %H:%M:%S')}"


class SessionManager:
    """Creates sessions and delegates persistence to a store."""

    def __init__(self, store: SessionStore | None = None):
        self.store = store

    def create_session(self, agent_id: str | None = None, name: str | None = None) -> ConversationSession:
        """Create a session holding only the root node."""
        root = create_node(NodeRole.SYSTEM, content="")
        session = ConversationSession(
            id=str(uuid4()),
            name=name or default_session_name(),
            root_node_id=root.id,
            active_leaf_id=root.id,
            display_agent_id=agent_id,
        )
        add_node_to_session(session, root)

        logger.info("Created new session", session_id=session.id, agent_id=agent_id, name=session.name)
        return session

    def update_display_agent(self, session: ConversationSession) -> str | None:
        """Recompute the display agent from the active path."""
        agent_id = find_display_agent_id(session)
        if agent_id != session.display_agent_id:
            logger.debug(
                "Display agent changed",
                session_id=session.id,
                previous=session.display_agent_id,
                current=agent_id,
            )
        session.display_agent_id = agent_id
        return agent_id

    def switch_branch(self, session: ConversationSession, node_id: str) -> bool:
        """Make the newest leaf below node_id the active leaf."""
        if node_id not in session.nodes:
            logger.warning("Cannot switch to missing branch", session_id=session.id, node_id=node_id)
            return False
        if not update_active_leaf(session, find_leaf(session, node_id)):
            return False
        self.update_display_agent(session)
        return True

    def _require_store(self) -> SessionStore:
        if self.store is None:
            raise RuntimeError("SessionManager has no store configured")
        return self.store

    async def load_session(self, session_id: str) -> ConversationSession | None:
        return await self._require_store().load_session(session_id)

    async def save_session(self, session: ConversationSession) -> None:
        await self._require_store().save_session(session)

    async def list_sessions(self) -> list[SessionSummary]:
        return await self._require_store().list_sessions()

    async def delete_session(self, session_id: str) -> bool:
        return await self._require_store().delete_session(session_id)
