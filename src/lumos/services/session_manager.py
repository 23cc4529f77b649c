import asyncio
import copy
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from ..errors import InvalidArgumentError, NotFoundError
from ..models import (
    Message,
    MessageRole,
    Session,
    SessionSummary,
    session_from_dict,
    session_to_dict,
    utc_now,
)
from ..settings import get_settings
from .metrics import SessionMetrics
from .storage import SessionStorage

logger = logging.getLogger(__name__)

_MESSAGE_ROLES = ("user", "assistant", "system")
_IMMUTABLE_MESSAGE_FIELDS = frozenset({"id", "created_at"})
_MUTABLE_MESSAGE_FIELDS = frozenset(
    {"role", "content", "agent_id", "agent_name", "agent_avatar", "images", "generating", "error"}
)
PREVIEW_LENGTH = 80


def _new_id() -> str:
    return str(uuid.uuid4())


class SessionManager:
    """Single writer over the in-memory session store.

    Every mutation runs under the session's lock, stamps ``updated_at``,
    persists through the storage adapter and returns a snapshot. Callers
    never receive the stored objects themselves.

    Missing sessions: ``get_session``, ``get_message`` and
    ``update_message`` return None, ``add_message`` raises NotFoundError,
    and the agent/context mutators are no-ops returning None.
    """

    def __init__(self, storage: SessionStorage, metrics: SessionMetrics | None = None) -> None:
        self._storage = storage
        self._metrics = metrics or SessionMetrics()
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def storage(self) -> SessionStorage:
        return self._storage

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    async def load_sessions(self) -> int:
        """Hydrate the store from storage. Returns the number of sessions loaded."""
        sessions = await self._storage.list_all()
        for session in sessions:
            self._sessions[session.id] = session
        logger.info("Loaded %d sessions from storage", len(sessions))
        return len(sessions)

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _mutate(self, session_id: str) -> AsyncIterator[Optional[Session]]:
        # unknown ids never get a lock, so the lock map only holds live sessions
        if session_id not in self._sessions:
            yield None
            return
        async with self._lock(session_id):
            yield self._sessions.get(session_id)

    async def _commit(self, session: Session) -> Session:
        session.touch()
        if not await self._storage.save(session):
            logger.warning("Session %s was not persisted", session.id)
        return copy.deepcopy(session)

    async def _insert(self, session: Session) -> Session:
        async with self._lock(session.id):
            self._sessions[session.id] = session
            if not await self._storage.save(session):
                logger.warning("Session %s was not persisted", session.id)
            await self._storage.set_active(session.id)
        self._metrics.track_session_created(session.id)
        logger.info("Created session %s with agents %s", session.id, session.agent_ids)
        return copy.deepcopy(session)

    # ---- sessions -------------------------------------------------------

    async def create_session(self, agent_id: str, title: str | None = None) -> Session:
        """Create a single-agent session and make it the active one."""
        if not agent_id:
            raise InvalidArgumentError("agent_id must not be empty")
        now = utc_now()
        session = Session(
            id=_new_id(),
            title=title if title is not None else get_settings().default_session_title,
            default_agent_id=agent_id,
            agent_ids=[agent_id],
            created_at=now,
            updated_at=now,
        )
        return await self._insert(session)

    async def create_multi_agent_session(
        self, agent_ids: Sequence[str], title: str | None = None
    ) -> Session:
        """Create a session with several agents; the first one listed is the default."""
        if not agent_ids:
            raise InvalidArgumentError("at least one agent is required")
        if any(not agent_id for agent_id in agent_ids):
            raise InvalidArgumentError("agent ids must not be empty")
        ordered = list(dict.fromkeys(agent_ids))
        now = utc_now()
        session = Session(
            id=_new_id(),
            title=(
                title
                if title is not None
                else get_settings().default_multi_agent_session_title
            ),
            default_agent_id=ordered[0],
            agent_ids=ordered,
            created_at=now,
            updated_at=now,
        )
        return await self._insert(session)

    def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    def list_sessions(self) -> List[Session]:
        """All sessions, most recently updated first."""
        ordered = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return [copy.deepcopy(s) for s in ordered]

    def summarize(self, session: Session) -> SessionSummary:
        preview = None
        if session.messages:
            content = session.messages[-1].content
            preview = content[:PREVIEW_LENGTH] + "..." if len(content) > PREVIEW_LENGTH else content
        return SessionSummary(
            id=session.id,
            title=session.title,
            default_agent_id=session.default_agent_id,
            message_count=len(session.messages),
            created_at=session.created_at,
            updated_at=session.updated_at,
            last_message_preview=preview,
            pinned=session.pinned,
        )

    async def set_active_session(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise NotFoundError("session", session_id)
        await self._storage.set_active(session_id)
        self._metrics.track_session_accessed(session_id)

    async def get_active_session(self) -> Session | None:
        active_id = await self._storage.get_active()
        if active_id is None:
            return None
        return self.get_session(active_id)

    async def update_session_title(self, session_id: str, title: str) -> Session | None:
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            session.title = title
            return await self._commit(session)

    async def clear_session_messages(self, session_id: str) -> Session | None:
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            session.messages = []
            return await self._commit(session)

    async def delete_session(self, session_id: str) -> bool:
        """Remove a session from the store and storage. Returns False if it was unknown."""
        async with self._mutate(session_id) as session:
            if session is None:
                return False
            del self._sessions[session_id]
            await self._storage.delete(session_id)
            if await self._storage.get_active() == session_id:
                await self._storage.set_active(None)
        self._locks.pop(session_id, None)
        self._metrics.track_session_deleted(session_id)
        logger.info("Deleted session %s", session_id)
        return True

    # ---- agents ---------------------------------------------------------

    async def add_agent_to_session(self, session_id: str, agent_id: str) -> Session | None:
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            if agent_id in session.agent_ids:
                return copy.deepcopy(session)
            session.agent_ids.append(agent_id)
            return await self._commit(session)

    async def remove_agent_from_session(self, session_id: str, agent_id: str) -> Session | None:
        """Remove agent_id; the default agent and non-members are left alone.

        The agent's context entry and its past messages are kept.
        """
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            if agent_id == session.default_agent_id:
                logger.warning(
                    "Refusing to remove default agent %s from session %s", agent_id, session_id
                )
                return copy.deepcopy(session)
            if agent_id not in session.agent_ids:
                return copy.deepcopy(session)
            session.agent_ids.remove(agent_id)
            return await self._commit(session)

    async def set_session_default_agent(self, session_id: str, agent_id: str) -> Session | None:
        """Make agent_id the default, enrolling it first if it is not a member."""
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            if agent_id not in session.agent_ids:
                session.agent_ids.append(agent_id)
            session.default_agent_id = agent_id
            return await self._commit(session)

    async def set_agent_system_prompt(
        self, session_id: str, agent_id: str, prompt: str
    ) -> Session | None:
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            session.context_for(agent_id).system_prompt = prompt
            return await self._commit(session)

    async def set_agent_model_settings(
        self, session_id: str, agent_id: str, settings: Mapping[str, Any]
    ) -> Session | None:
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            session.context_for(agent_id).model_settings = dict(settings)
            return await self._commit(session)

    # ---- messages -------------------------------------------------------

    async def add_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        agent_id: str | None = None,
        agent_name: str | None = None,
        response_time_ms: float | None = None,
        **extra: Any,
    ) -> Message:
        """Append a message with a fresh id and timestamp.

        response_time_ms feeds the usage metrics and is not stored on the message.

        Raises:
            NotFoundError: session_id is unknown.
            InvalidArgumentError: role is not user/assistant/system.
        """
        if role not in _MESSAGE_ROLES:
            raise InvalidArgumentError(f"unknown message role: {role!r}")
        unknown = set(extra) - _MUTABLE_MESSAGE_FIELDS
        if unknown:
            raise InvalidArgumentError(f"unknown message fields: {sorted(unknown)}")
        async with self._mutate(session_id) as session:
            if session is None:
                raise NotFoundError("session", session_id)
            message = Message(
                id=_new_id(),
                role=role,
                content=content,
                created_at=utc_now(),
                agent_id=agent_id,
                agent_name=agent_name,
                **extra,
            )
            session.messages.append(message)
            await self._commit(session)
            self._metrics.track_message_added(session_id, message, response_time_ms)
            return copy.deepcopy(message)

    def get_message(self, session_id: str, message_id: str) -> Message | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        message = session.find_message(message_id)
        return copy.deepcopy(message) if message is not None else None

    async def update_message(
        self, session_id: str, message_id: str, updates: Mapping[str, Any]
    ) -> Message | None:
        """Patch a message in place. Unknown session or message is a silent no-op."""
        forbidden = set(updates) & _IMMUTABLE_MESSAGE_FIELDS
        if forbidden:
            raise InvalidArgumentError(f"message fields are immutable: {sorted(forbidden)}")
        unknown = set(updates) - _MUTABLE_MESSAGE_FIELDS
        if unknown:
            raise InvalidArgumentError(f"unknown message fields: {sorted(unknown)}")
        if "role" in updates and updates["role"] not in _MESSAGE_ROLES:
            raise InvalidArgumentError(f"unknown message role: {updates['role']!r}")
        async with self._mutate(session_id) as session:
            if session is None:
                return None
            message = session.find_message(message_id)
            if message is None:
                return None
            for name, value in updates.items():
                setattr(message, name, value)
            await self._commit(session)
            return copy.deepcopy(message)

    # ---- import / export ------------------------------------------------

    def export_sessions(self) -> str:
        """Serialize every session, most recently updated first, as a JSON array."""
        return json.dumps(
            [session_to_dict(s) for s in self.list_sessions()], ensure_ascii=False, indent=2
        )

    async def import_sessions(self, data: str) -> bool:
        """Replace the whole store with the sessions in a JSON array.

        Nothing changes unless every entry parses and satisfies the session
        invariants. Returns False for rejected input.
        """
        try:
            raw = json.loads(data)
            if not isinstance(raw, list):
                logger.warning("Session import rejected: expected a JSON array")
                return False
            incoming = [session_from_dict(item) for item in raw]
            problems = [p for s in incoming for p in _invariant_problems(s)]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Session import rejected: %s", e)
            return False
        if len({s.id for s in incoming}) != len(incoming):
            problems.append("duplicate session ids")
        if problems:
            logger.warning("Session import rejected: %s", "; ".join(problems))
            return False

        incoming_ids = {s.id for s in incoming}
        for session_id in [sid for sid in self._sessions if sid not in incoming_ids]:
            await self.delete_session(session_id)
        for session in incoming:
            async with self._lock(session.id):
                self._sessions[session.id] = session
                if not await self._storage.save(session):
                    logger.warning("Session %s was not persisted", session.id)
        logger.info("Imported %d sessions", len(incoming))
        return True


def _invariant_problems(session: Session) -> List[str]:
    problems = []
    if not session.agent_ids:
        problems.append(f"session {session.id} has no agents")
    if len(set(session.agent_ids)) != len(session.agent_ids):
        problems.append(f"session {session.id} lists an agent twice")
    if session.default_agent_id not in session.agent_ids:
        problems.append(f"session {session.id} default agent is not a member")
    if session.updated_at < session.created_at:
        problems.append(f"session {session.id} was updated before it was created")
    if len({m.id for m in session.messages}) != len(session.messages):
        problems.append(f"session {session.id} has duplicate message ids")
    if any(m.role not in _MESSAGE_ROLES for m in session.messages):
        problems.append(f"session {session.id} has a message with an unknown role")
    return problems
