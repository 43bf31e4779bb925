"""
Turn orchestration.

One turn:
1. Append a user/assistant message pair under the active leaf
2. Compress old history if the thresholds are crossed
3. Build the request context from the active path
4. Stream the model response into the assistant node
5. Finalize (or record the error) and persist the session
"""

import asyncio

import structlog

from ..config import Settings, get_settings
from ..context import AgentConfig, CompressionEngine, ContextBuilder, UserProfile
from ..conversation import (
    Attachment,
    ConversationNode,
    ConversationSession,
    ResponseIntegrator,
    SessionManager,
    create_message_pair,
    create_regenerate_branch,
    get_node_path,
    update_active_leaf,
)
from ..llm.base import ModelRequestSender, RequestCancelledError, RequestOptions
from ..tokens import EstimatingTokenCounter, TokenCounter, count_tokens_safe

logger = structlog.get_logger()


class ChatExecutor:
    """Runs conversation turns against a model request sender."""

    def __init__(
        self,
        sender: ModelRequestSender,
        session_manager: SessionManager | None = None,
        settings: Settings | None = None,
        token_counter: TokenCounter | None = None,
        context_builder: ContextBuilder | None = None,
        compression_engine: CompressionEngine | None = None,
        integrator: ResponseIntegrator | None = None,
    ):
        self.sender = sender
        self.session_manager = session_manager
        self.settings = settings or get_settings()
        self.token_counter = token_counter or EstimatingTokenCounter()
        self.context_builder = context_builder or ContextBuilder(
            settings=self.settings,
            token_counter=self.token_counter,
        )
        self.compression_engine = compression_engine or CompressionEngine(
            sender,
            settings=self.settings,
            token_counter=self.token_counter,
            context_builder=self.context_builder,
        )
        self.integrator = integrator or ResponseIntegrator(
            settings=self.settings,
            token_counter=self.token_counter,
        )
        self._inflight: dict[str, asyncio.Future] = {}

    def cancel(self, node_id: str) -> bool:
        """Cancel the in-flight request generating node_id."""
        request = self._inflight.get(node_id)
        if request is None or request.done():
            return False
        request.cancel()
        logger.info("Cancelling generation", node_id=node_id)
        return True

    async def send_message(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        content: str,
        attachments: list[Attachment] | None = None,
        user_profile: UserProfile | None = None,
    ) -> ConversationNode | None:
        """Append a user message and generate the assistant reply."""
        pair = create_message_pair(session, content, session.active_leaf_id, attachments)
        if pair is None:
            logger.error("Failed to create message pair", session_id=session.id)
            return None

        user_node, assistant_node = pair
        update_active_leaf(session, assistant_node.id)

        token_result = await count_tokens_safe(self.token_counter, content, agent.model_id)
        user_node.metadata["token_count"] = token_result.count

        await self._run_turn(session, agent, assistant_node, user_profile)
        return assistant_node

    async def regenerate(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        assistant_node_id: str,
        user_profile: UserProfile | None = None,
    ) -> ConversationNode | None:
        """Generate a new reply to the same user message on a fresh branch."""
        target = session.nodes.get(assistant_node_id)
        if target is None or target.parent_id is None:
            logger.warning("Cannot regenerate missing node", session_id=session.id, node_id=assistant_node_id)
            return None

        new_node = create_regenerate_branch(session, assistant_node_id, target.parent_id)
        if new_node is None:
            return None

        update_active_leaf(session, new_node.id)
        await self._run_turn(session, agent, new_node, user_profile)
        return new_node

    async def _request(self, node: ConversationNode, options: RequestOptions):
        request = asyncio.ensure_future(
            self.sender.send_request(
                options,
                on_chunk=lambda text, is_reasoning: self.integrator.on_stream_chunk(node, text, is_reasoning),
            )
        )
        self._inflight[node.id] = request
        try:
            return await request
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if request.cancelled() and not (current and current.cancelling()):
                raise RequestCancelledError(f"Generation of {node.id} was cancelled") from None
            raise
        finally:
            self._inflight.pop(node.id, None)

    async def _run_turn(
        self,
        session: ConversationSession,
        agent: AgentConfig,
        node: ConversationNode,
        user_profile: UserProfile | None,
    ) -> None:
        node.metadata.update(
            {
                "agent_id": agent.id,
                "profile_id": agent.profile_id,
                "model_id": agent.model_id,
            }
        )

        try:
            await self.compression_engine.check_and_compress(session, agent=agent)

            path = get_node_path(session, node.id)
            context = await self.context_builder.build_llm_context(
                session,
                agent,
                path=path,
                user_profile=user_profile,
            )

            options = RequestOptions(
                profile_id=agent.profile_id,
                model_id=agent.model_id,
                messages=context.messages,
                temperature=agent.temperature if agent.temperature is not None else self.settings.default_temperature,
                max_tokens=agent.max_tokens or self.settings.default_max_tokens,
                stream=True,
            )
            response = await self._request(node, options)

            await self.integrator.finalize(
                session,
                node,
                response,
                agent.id,
                messages=context.messages,
                model_id=agent.model_id,
            )
        except asyncio.CancelledError as e:
            self.integrator.on_error(node, e, context="turn")
            await self._persist(session)
            raise
        except Exception as e:
            self.integrator.on_error(node, e, context="turn")

        await self._persist(session)

    async def _persist(self, session: ConversationSession) -> None:
        if self.session_manager is None or self.session_manager.store is None:
            return
        try:
            await self.session_manager.save_session(session)
        except Exception as e:
            logger.error("Failed to persist session", session_id=session.id, error=str(e))
