"""
Tree operations for branching conversation histories.

All structural mutations of a session's node map go through here. Broken
links are logged and answered with the best partial result instead of
raising, so a single corrupt session cannot crash its consumers.
"""

import secrets
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from .nodes import (
    Attachment,
    ConversationNode,
    ConversationSession,
    NodeRole,
    NodeStatus,
)

logger = structlog.get_logger()


def generate_node_id() -> str:
    """Generate a unique node id."""
    return f"node-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def create_node(
    role: NodeRole | str,
    content: str = "",
    parent_id: str | None = None,
    status: NodeStatus | str = NodeStatus.COMPLETE,
    is_enabled: bool = True,
    metadata: dict[str, Any] | None = None,
    attachments: list[Attachment] | None = None,
) -> ConversationNode:
    """Create a detached node with a fresh id and timestamp."""
    return ConversationNode(
        id=generate_node_id(),
        role=NodeRole(role),
        content=content,
        parent_id=parent_id,
        children_ids=[],
        status=NodeStatus(status),
        is_enabled=is_enabled,
        attachments=list(attachments or []),
        metadata=dict(metadata or {}),
    )


def add_node_to_session(session: ConversationSession, node: ConversationNode) -> bool:
    """Insert a node and register it with its parent."""
    if node.parent_id is not None:
        parent = session.nodes.get(node.parent_id)
        if parent is None:
            logger.warning(
                "Cannot add node: parent does not exist",
                session_id=session.id,
                node_id=node.id,
                parent_id=node.parent_id,
            )
            return False
        if node.id not in parent.children_ids:
            parent.children_ids.append(node.id)

    session.nodes[node.id] = node
    logger.debug(
        "Node added to session",
        session_id=session.id,
        node_id=node.id,
        role=node.role.value,
        parent_id=node.parent_id,
    )
    return True


def get_node_path(session: ConversationSession, leaf_id: str | None) -> list[ConversationNode]:
    """Walk parent pointers from leaf_id and return the root-first path."""
    path: list[ConversationNode] = []
    visited: set[str] = set()
    current_id = leaf_id

    while current_id is not None:
        if current_id in visited:
            logger.warning("Cycle detected in node path", session_id=session.id, node_id=current_id)
            break
        node = session.nodes.get(current_id)
        if node is None:
            logger.warning("Broken parent link in node path", session_id=session.id, node_id=current_id)
            break
        visited.add(current_id)
        path.append(node)
        current_id = node.parent_id

    path.reverse()
    return path


def is_descendant(session: ConversationSession, node_id: str, ancestor_id: str) -> bool:
    """Check whether node_id lies in the subtree rooted at ancestor_id."""
    return any(node.id == ancestor_id for node in get_node_path(session, node_id))


def reparent_node(session: ConversationSession, node_id: str, new_parent_id: str) -> bool:
    """Move a node (and its subtree) under a new parent."""
    node = session.nodes.get(node_id)
    new_parent = session.nodes.get(new_parent_id)
    if node is None or new_parent is None:
        logger.warning(
            "Cannot reparent: node or new parent does not exist",
            session_id=session.id,
            node_id=node_id,
            new_parent_id=new_parent_id,
        )
        return False

    if is_descendant(session, new_parent_id, node_id):
        logger.warning(
            "Cannot reparent a node under its own subtree",
            session_id=session.id,
            node_id=node_id,
            new_parent_id=new_parent_id,
        )
        return False

    old_parent = session.nodes.get(node.parent_id) if node.parent_id else None
    if old_parent is not None and node_id in old_parent.children_ids:
        old_parent.children_ids.remove(node_id)

    if node_id not in new_parent.children_ids:
        new_parent.children_ids.append(node_id)
    node.parent_id = new_parent_id

    logger.debug(
        "Node reparented",
        session_id=session.id,
        node_id=node_id,
        old_parent_id=old_parent.id if old_parent else None,
        new_parent_id=new_parent_id,
    )
    return True


def get_all_descendants(session: ConversationSession, node_id: str) -> list[ConversationNode]:
    """Collect every node below node_id in depth-first order."""
    descendants: list[ConversationNode] = []
    node = session.nodes.get(node_id)
    if node is None:
        return descendants

    stack = list(reversed(node.children_ids))
    seen: set[str] = {node_id}
    while stack:
        child_id = stack.pop()
        if child_id in seen:
            continue
        seen.add(child_id)
        child = session.nodes.get(child_id)
        if child is None:
            continue
        descendants.append(child)
        stack.extend(reversed(child.children_ids))
    return descendants


def disable_node_tree(session: ConversationSession, node_id: str) -> None:
    """Disable a node and its whole subtree."""
    node = session.nodes.get(node_id)
    if node is None:
        logger.warning("Cannot disable missing node", session_id=session.id, node_id=node_id)
        return

    node.is_enabled = False
    for descendant in get_all_descendants(session, node_id):
        descendant.is_enabled = False


def create_message_pair(
    session: ConversationSession,
    user_content: str,
    parent_id: str,
    attachments: list[Attachment] | None = None,
) -> tuple[ConversationNode, ConversationNode] | None:
    """Append a user message and an empty pending assistant reply."""
    user_node = create_node(
        NodeRole.USER,
        content=user_content,
        parent_id=parent_id,
        status=NodeStatus.COMPLETE,
        attachments=attachments,
    )
    if not add_node_to_session(session, user_node):
        return None

    assistant_node = create_node(
        NodeRole.ASSISTANT,
        content="",
        parent_id=user_node.id,
        status=NodeStatus.PENDING,
    )
    add_node_to_session(session, assistant_node)

    logger.info(
        "Created message pair",
        session_id=session.id,
        user_node_id=user_node.id,
        assistant_node_id=assistant_node.id,
        previous_leaf_id=parent_id,
    )
    return user_node, assistant_node


def logical_parent(session: ConversationSession, node: ConversationNode) -> ConversationNode:
    """The last node a compression node stands in for, or the node itself."""
    if node.is_compression_node and node.compressed_node_ids:
        covered = session.nodes.get(node.compressed_node_ids[-1])
        if covered is not None:
            return covered
    return node


def create_regenerate_branch(
    session: ConversationSession,
    target_node_id: str,
    parent_node_id: str,
) -> ConversationNode | None:
    """Disable an assistant reply and add a fresh pending sibling.

    When a compression batch ended on the user message, the reply now hangs
    off the compression node; the user message it covers is checked instead
    and the new sibling still goes under the compression node.
    """
    target = session.nodes.get(target_node_id)
    parent = session.nodes.get(parent_node_id)
    if target is None or parent is None:
        logger.warning(
            "Cannot regenerate: node does not exist",
            session_id=session.id,
            target_node_id=target_node_id,
            parent_node_id=parent_node_id,
        )
        return None
    if target.role != NodeRole.ASSISTANT:
        logger.warning("Only assistant messages can be regenerated", node_id=target_node_id)
        return None
    if logical_parent(session, parent).role != NodeRole.USER:
        logger.warning("Regenerate parent must be a user message", node_id=parent_node_id)
        return None

    disable_node_tree(session, target_node_id)
    new_node = create_node(
        NodeRole.ASSISTANT,
        content="",
        parent_id=parent_node_id,
        status=NodeStatus.PENDING,
    )
    add_node_to_session(session, new_node)

    logger.info(
        "Created regenerate branch",
        session_id=session.id,
        old_node_id=target_node_id,
        new_node_id=new_node.id,
    )
    return new_node


def create_edit_branch(
    session: ConversationSession,
    node_id: str,
    new_content: str,
) -> ConversationNode | None:
    """Create an edited sibling of a message, leaving the original intact."""
    original = session.nodes.get(node_id)
    if original is None or original.parent_id is None:
        logger.warning("Cannot edit: node missing or is root", session_id=session.id, node_id=node_id)
        return None

    edited = create_node(
        original.role,
        content=new_content,
        parent_id=original.parent_id,
        status=NodeStatus.COMPLETE,
        attachments=list(original.attachments),
        metadata={"edited_from": original.id},
    )
    if not add_node_to_session(session, edited):
        return None
    return edited


def update_active_leaf(session: ConversationSession, node_id: str) -> bool:
    """Point the session at a different leaf."""
    if node_id not in session.nodes:
        logger.warning("Cannot set active leaf: node does not exist", session_id=session.id, node_id=node_id)
        return False

    previous = session.active_leaf_id
    session.active_leaf_id = node_id
    session.touch()
    logger.debug("Active leaf updated", session_id=session.id, previous_leaf_id=previous, leaf_id=node_id)
    return True


def find_leaf(session: ConversationSession, node_id: str) -> str:
    """Follow the newest enabled child down to a leaf."""
    current = session.nodes.get(node_id)
    seen: set[str] = set()
    while current is not None and current.id not in seen:
        seen.add(current.id)
        enabled_children = [
            session.nodes[cid]
            for cid in current.children_ids
            if cid in session.nodes and session.nodes[cid].is_enabled
        ]
        if not enabled_children:
            return current.id
        current = enabled_children[-1]
    return node_id


def find_display_agent_id(session: ConversationSession) -> str | None:
    """Agent of the nearest assistant reply above the active leaf."""
    for node in reversed(get_node_path(session, session.active_leaf_id)):
        if node.role == NodeRole.ASSISTANT and node.metadata.get("agent_id"):
            return node.metadata["agent_id"]
    return None


def soft_delete_node(session: ConversationSession, node_id: str) -> bool:
    """Mark a node disabled without removing it."""
    node = session.nodes.get(node_id)
    if node is None:
        logger.warning("Cannot soft-delete missing node", session_id=session.id, node_id=node_id)
        return False

    node.is_enabled = False
    session.touch()
    logger.info("Node soft-deleted", session_id=session.id, node_id=node_id, role=node.role.value)
    return True


def transfer_children(session: ConversationSession, from_node_id: str, to_node_id: str) -> None:
    """Move all children of one node onto another."""
    source = session.nodes.get(from_node_id)
    target = session.nodes.get(to_node_id)
    if source is None or target is None:
        logger.warning(
            "Cannot transfer children: node does not exist",
            session_id=session.id,
            from_node_id=from_node_id,
            to_node_id=to_node_id,
        )
        return

    for child_id in list(source.children_ids):
        reparent_node(session, child_id, to_node_id)


@dataclass
class IntegrityReport:
    """Result of a tree integrity check."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)


def validate_node_integrity(session: ConversationSession) -> IntegrityReport:
    """Check parent/child consistency, root and active leaf."""
    errors: list[str] = []

    if session.root_node_id not in session.nodes:
        errors.append(f"Root node does not exist: {session.root_node_id}")
    if session.active_leaf_id not in session.nodes:
        errors.append(f"Active leaf does not exist: {session.active_leaf_id}")

    roots = [n.id for n in session.nodes.values() if n.parent_id is None]
    if len(roots) != 1:
        errors.append(f"Expected exactly one root, found {len(roots)}")

    parent_count: dict[str, int] = {}
    for node in session.nodes.values():
        if node.parent_id is not None and node.parent_id not in session.nodes:
            errors.append(f"Node {node.id} has missing parent {node.parent_id}")
        for child_id in node.children_ids:
            child = session.nodes.get(child_id)
            if child is None:
                errors.append(f"Node {node.id} lists missing child {child_id}")
            elif child.parent_id != node.id:
                errors.append(
                    f"Inconsistent link: {node.id} lists {child_id} but its parent is {child.parent_id}"
                )
            parent_count[child_id] = parent_count.get(child_id, 0) + 1

    for node in session.nodes.values():
        if node.parent_id is None:
            continue
        count = parent_count.get(node.id, 0)
        if count != 1:
            errors.append(f"Node {node.id} appears in {count} children lists")

    if session.active_leaf_id in session.nodes:
        path = get_node_path(session, session.active_leaf_id)
        if not path or path[0].id != session.root_node_id:
            errors.append("Active leaf does not resolve to the root")

    report = IntegrityReport(is_valid=not errors, errors=errors)
    if not report.is_valid:
        logger.error("Node integrity check failed", session_id=session.id, error_count=len(errors), errors=errors)
    return report
