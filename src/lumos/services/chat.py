import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List

from ..agent.gateway import GenerateRequest, GenerationGateway
from ..errors import InvalidArgumentError, NotFoundError
from ..models import Session
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 20
_MODEL_SETTING_KEYS = ("temperature", "model", "max_tokens")


class ChatService:
    """Runs one conversational turn: user message in, streamed agent reply out."""

    def __init__(self, manager: SessionManager, gateway: GenerationGateway) -> None:
        self._manager = manager
        self._gateway = gateway

    def _build_request(self, session: Session, agent_id: str) -> GenerateRequest:
        messages: List[Dict[str, str]] = []
        context = session.agent_contexts.get(agent_id)
        if context is not None and context.system_prompt:
            messages.append({"role": "system", "content": context.system_prompt})
        for msg in session.messages[-HISTORY_WINDOW:]:
            if msg.role == "system" or msg.generating:
                continue
            messages.append({"role": msg.role, "content": msg.content})

        options: Dict[str, Any] = {}
        if context is not None and context.model_settings:
            options = {
                k: v for k, v in context.model_settings.items() if k in _MODEL_SETTING_KEYS
            }
        return GenerateRequest(messages=messages, options=options)

    async def stream_reply(
        self,
        session_id: str,
        user_message: str,
        agent_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Append the user message, then yield the routed agent's reply as it streams.

        The assistant message is stored only after the stream finishes; a
        cancelled or failed stream leaves the session with just the user turn.

        Raises:
            NotFoundError: session_id is unknown.
            InvalidArgumentError: agent_id is not a member of the session.
        """
        current = self._manager.get_session(session_id)
        if current is None:
            raise NotFoundError("session", session_id)
        if agent_id is not None and agent_id not in current.agent_ids:
            raise InvalidArgumentError(f"agent {agent_id} is not part of session {session_id}")

        await self._manager.add_message(session_id, "user", user_message)
        session = self._manager.get_session(session_id) or current

        target = agent_id or session.default_agent_id
        agent = await self._gateway.get_agent(target)
        agent_name = agent.name if agent is not None else target
        logger.info("Chat turn session=%s agent=%s", session_id, target)

        request = self._build_request(session, target)
        reply = ""
        started = time.monotonic()
        async for delta in self._gateway.stream_generate(target, request, cancel_event):
            reply += delta
            yield delta

        if cancel_event is not None and cancel_event.is_set():
            logger.info("Chat turn session=%s cancelled; reply discarded", session_id)
            return
        if not reply:
            return

        attributed = len(session.agent_ids) > 1
        await self._manager.add_message(
            session_id,
            "assistant",
            reply,
            agent_id=target if attributed else None,
            agent_name=agent_name if attributed else None,
            agent_avatar=agent.avatar if attributed and agent is not None else None,
            response_time_ms=(time.monotonic() - started) * 1000,
        )
