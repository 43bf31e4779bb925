"""
Conversation tree data model.

Nodes live in an id-keyed map on the session and reference each other
only by id (parent_id / children_ids), so the whole tree is plain data
and serializes without back-references.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return utcnow()


class NodeRole(str, Enum):
    """Message roles in the conversation tree."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class NodeStatus(str, Enum):
    """Generation status of a node."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETE, NodeStatus.ERROR)


_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.STREAMING, NodeStatus.COMPLETE, NodeStatus.ERROR}),
    NodeStatus.STREAMING: frozenset({NodeStatus.COMPLETE, NodeStatus.ERROR}),
    NodeStatus.COMPLETE: frozenset(),
    NodeStatus.ERROR: frozenset(),
}


@dataclass
class Attachment:
    """Reference to a file attached to a message."""

    id: str
    type: str = "other"  # image | audio | video | document | other
    mime_type: str = "application/octet-stream"
    size: int = 0
    name: str = ""
    path: str | None = None
    data: str | None = None  # inline base64 payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "mime_type": self.mime_type,
            "size": self.size,
            "name": self.name,
            "path": self.path,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            type=data.get("type", "other"),
            mime_type=data.get("mime_type", "application/octet-stream"),
            size=data.get("size", 0),
            name=data.get("name", ""),
            path=data.get("path"),
            data=data.get("data"),
        )


@dataclass
class ConversationNode:
    """A single message in the conversation tree."""

    id: str
    role: NodeRole
    content: str = ""
    parent_id: str | None = None
    children_ids: list[str] = field(default_factory=list)
    status: NodeStatus = NodeStatus.COMPLETE
    is_enabled: bool = True
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_compression_node(self) -> bool:
        return bool(self.metadata.get("is_compression_node"))

    @property
    def compressed_node_ids(self) -> list[str]:
        return list(self.metadata.get("compressed_node_ids") or [])

    @property
    def token_count(self) -> int:
        return int(self.metadata.get("token_count") or 0)

    def transition(self, status: NodeStatus) -> bool:
        """Move to a new status if the transition is allowed."""
        if status == self.status:
            return True
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            logger.warning(
                "Rejected node status transition",
                node_id=self.id,
                current=self.status.value,
                requested=status.value,
            )
            return False
        self.status = status
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "children_ids": list(self.children_ids),
            "role": self.role.value,
            "content": self.content,
            "status": self.status.value,
            "is_enabled": self.is_enabled,
            "attachments": [a.to_dict() for a in self.attachments],
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationNode":
        return cls(
            id=data["id"],
            parent_id=data.get("parent_id"),
            children_ids=list(data.get("children_ids") or []),
            role=NodeRole(data["role"]),
            content=data.get("content", ""),
            status=NodeStatus(data.get("status", NodeStatus.COMPLETE.value)),
            is_enabled=data.get("is_enabled", True),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            metadata=dict(data.get("metadata") or {}),
            timestamp=_parse_datetime(data.get("timestamp")),
        )


@dataclass
class ConversationSession:
    """A branching conversation: the node map plus root/leaf pointers."""

    id: str
    name: str
    root_node_id: str
    active_leaf_id: str
    nodes: dict[str, ConversationNode] = field(default_factory=dict)
    display_agent_id: str | None = None
    agent_usage: dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_node(self, node_id: str | None) -> ConversationNode | None:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "root_node_id": self.root_node_id,
            "active_leaf_id": self.active_leaf_id,
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
            "display_agent_id": self.display_agent_id,
            "agent_usage": dict(self.agent_usage),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationSession":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            root_node_id=data["root_node_id"],
            active_leaf_id=data["active_leaf_id"],
            nodes={
                node_id: ConversationNode.from_dict(node)
                for node_id, node in (data.get("nodes") or {}).items()
            },
            display_agent_id=data.get("display_agent_id"),
            agent_usage=dict(data.get("agent_usage") or {}),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )
