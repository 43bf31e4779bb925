"""
Session persistence.

One row per session; the whole tree is stored as the JSON form of
ConversationSession.to_dict(), with a few columns copied out for listing.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import ChatSessionRecord
from .nodes import ConversationSession

logger = structlog.get_logger()


@dataclass
class SessionSummary:
    """Listing entry for a stored session."""

    id: str
    name: str
    node_count: int
    display_agent_id: str | None
    updated_at: datetime | None


def _naive_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class SessionStore:
    """Loads and saves conversation sessions through SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def load_session(self, session_id: str) -> ConversationSession | None:
        async with self.session_factory() as db:
            record = await db.get(ChatSessionRecord, session_id)
            if record is None:
                return None
            try:
                return ConversationSession.from_dict(record.data)
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Failed to decode stored session", session_id=session_id, error=str(e))
                return None

    async def save_session(self, session: ConversationSession) -> None:
        async with self.session_factory() as db:
            record = await db.get(ChatSessionRecord, session.id)
            if record is None:
                record = ChatSessionRecord(id=session.id, created_at=_naive_utc(session.created_at))
                db.add(record)

            record.name = session.name
            record.root_node_id = session.root_node_id
            record.active_leaf_id = session.active_leaf_id
            record.display_agent_id = session.display_agent_id
            record.node_count = len(session.nodes)
            record.data = session.to_dict()
            record.updated_at = _naive_utc(session.updated_at)

            await db.commit()

        logger.debug("Session saved", session_id=session.id, node_count=len(session.nodes))

    async def list_sessions(self) -> list[SessionSummary]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ChatSessionRecord).order_by(ChatSessionRecord.updated_at.desc())
            )
            return [
                SessionSummary(
                    id=record.id,
                    name=record.name,
                    node_count=record.node_count,
                    display_agent_id=record.display_agent_id,
                    updated_at=record.updated_at,
                )
                for record in result.scalars().all()
            ]

    async def delete_session(self, session_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(ChatSessionRecord).where(ChatSessionRecord.id == session_id)
            )
            await db.commit()

        deleted = bool(result.rowcount)
        if deleted:
            logger.info("Session deleted", session_id=session_id)
        return deleted
