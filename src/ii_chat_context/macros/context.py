"""
Macro execution context.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..context.presets import AgentConfig, UserProfile
    from ..conversation.nodes import ConversationSession


@dataclass
class MacroContext:
    """Everything a macro may read or write while it runs."""

    user_name: str = "User"
    char_name: str = "Assistant"
    user_profile: str | None = None
    char_description: str | None = None
    last_message: str | None = None
    last_user_message: str | None = None
    last_char_message: str | None = None
    input: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    global_variables: dict[str, Any] = field(default_factory=dict)
    session: "ConversationSession | None" = None
    agent: "AgentConfig | None" = None
    timestamp: datetime | None = None
    model_id: str | None = None
    profile_id: str | None = None

    @property
    def now(self) -> datetime:
        return self.timestamp or datetime.now().astimezone()


def create_macro_context(
    user_name: str | None = None,
    char_name: str | None = None,
    session: "ConversationSession | None" = None,
    agent: "AgentConfig | None" = None,
    user_profile: "UserProfile | None" = None,
    timestamp: datetime | None = None,
    global_variables: dict[str, Any] | None = None,
) -> MacroContext:
    """Build a base context from the agent and user profile."""
    return MacroContext(
        user_name=user_name or (user_profile.name if user_profile else None) or "User",
        char_name=char_name or (agent.name if agent else None) or "Assistant",
        user_profile=user_profile.content if user_profile else None,
        char_description=agent.description if agent else None,
        session=session,
        agent=agent,
        timestamp=timestamp,
        model_id=agent.model_id if agent else None,
        profile_id=agent.profile_id if agent else None,
        global_variables=global_variables if global_variables is not None else {},
    )


def extract_context_from_session(
    session: "ConversationSession",
    target_node_id: str | None = None,
) -> dict[str, Any]:
    """Pull the last messages along the active (or given) path."""
    messages = []
    seen: set[str] = set()
    current_id = target_node_id or session.active_leaf_id

    while current_id and current_id not in seen:
        node = session.nodes.get(current_id)
        if node is None:
            break
        seen.add(current_id)
        if node.id != session.root_node_id and node.is_enabled:
            messages.append(node)
        current_id = node.parent_id

    messages.reverse()
    last_user = next((n.content for n in reversed(messages) if n.role.value == "user"), None)
    last_char = next((n.content for n in reversed(messages) if n.role.value == "assistant"), None)

    return {
        "last_message": messages[-1].content if messages else None,
        "last_user_message": last_user,
        "last_char_message": last_char,
    }
