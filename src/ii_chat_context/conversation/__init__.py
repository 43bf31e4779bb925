"""
Conversation tree, streaming integration and session lifecycle.
"""

from .inline_data import (
    AttachmentSink,
    DirectoryAttachmentSink,
    InMemoryAttachmentSink,
    InlineDataResult,
    process_inline_data,
)
from .nodes import Attachment, ConversationNode, ConversationSession, NodeRole, NodeStatus
from .response import ResponseIntegrator
from .session import SessionManager
from .store import SessionStore, SessionSummary
from .tree import (
    IntegrityReport,
    add_node_to_session,
    create_edit_branch,
    create_message_pair,
    create_node,
    create_regenerate_branch,
    disable_node_tree,
    find_leaf,
    get_node_path,
    reparent_node,
    update_active_leaf,
    validate_node_integrity,
)

__all__ = [
    "Attachment",
    "AttachmentSink",
    "ConversationNode",
    "ConversationSession",
    "DirectoryAttachmentSink",
    "InMemoryAttachmentSink",
    "InlineDataResult",
    "IntegrityReport",
    "NodeRole",
    "NodeStatus",
    "ResponseIntegrator",
    "SessionManager",
    "SessionStore",
    "SessionSummary",
    "add_node_to_session",
    "create_edit_branch",
    "create_message_pair",
    "create_node",
    "create_regenerate_branch",
    "disable_node_tree",
    "find_leaf",
    "get_node_path",
    "process_inline_data",
    "reparent_node",
    "update_active_leaf",
    "validate_node_integrity",
]
