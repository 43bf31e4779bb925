"""
Shared fixtures: sessions, settings and a scripted model sender.
"""

import pytest

from ii_chat_context.config import LLMModelInfo, LLMProfile, Settings
from ii_chat_context.context import AgentConfig
from ii_chat_context.conversation import ConversationSession, SessionManager, add_node_to_session, create_node
from ii_chat_context.conversation.nodes import NodeRole
from ii_chat_context.llm.base import LLMResponse, ModelRequestSender, RequestOptions, Usage


class FakeSender(ModelRequestSender):
    """Records requests and replays scripted chunks."""

    def __init__(self):
        self.requests: list[RequestOptions] = []
        self.content = "summary text"
        self.reasoning: str | None = None
        self.chunks: list[tuple[str, bool]] = []
        self.usage: Usage | None = Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
        self.error: BaseException | None = None

    async def send_request(self, options, on_chunk=None):
        self.requests.append(options)
        if self.error is not None:
            raise self.error
        for text, is_reasoning in self.chunks:
            if on_chunk is not None:
                on_chunk(text, is_reasoning)
        return LLMResponse(
            content=self.content,
            reasoning_content=self.reasoning,
            usage=self.usage,
            model=options.model_id,
        )


def build_session(message_count: int = 0, token_count: int = 10) -> ConversationSession:
    """A linear session with alternating user/assistant messages."""
    session = SessionManager().create_session(agent_id="agent-1", name="test")
    parent_id = session.root_node_id
    for i in range(message_count):
        role = NodeRole.USER if i % 2 == 0 else NodeRole.ASSISTANT
        node = create_node(role, content=f"message {i}", parent_id=parent_id, metadata={"token_count": token_count})
        add_node_to_session(session, node)
        parent_id = node.id
    session.active_leaf_id = parent_id
    return session


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        profiles=[
            LLMProfile(
                id="openai",
                provider="openai",
                api_key="sk-test",
                models=[LLMModelInfo(id="gpt-4o")],
            )
        ],
    )


@pytest.fixture
def agent():
    return AgentConfig(id="agent-1", name="Aria", profile_id="openai", model_id="gpt-4o")


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def make_session():
    return build_session
