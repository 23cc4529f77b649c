import copy
import json
import logging
from typing import Dict, List, Protocol

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import Session, session_from_dict, session_to_dict
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
SESSION_INDEX_KEY = "sessions"
ACTIVE_SESSION_KEY = "sessions:active"


class SessionStorage(Protocol):
    """Persistence for sessions and the active-session pointer."""

    async def save(self, session: Session) -> bool: ...

    async def load(self, session_id: str) -> Session | None: ...

    async def set_active(self, session_id: str | None) -> bool: ...

    async def get_active(self) -> str | None: ...

    async def delete(self, session_id: str) -> bool: ...

    async def list_all(self) -> List[Session]: ...


class InMemoryStorage:
    """Process-local storage; keeps independent copies of saved sessions."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._active_id: str | None = None

    async def save(self, session: Session) -> bool:
        self._sessions[session.id] = copy.deepcopy(session)
        return True

    async def load(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def set_active(self, session_id: str | None) -> bool:
        self._active_id = session_id
        return True

    async def get_active(self) -> str | None:
        return self._active_id

    async def delete(self, session_id: str) -> bool:
        self._sessions.pop(session_id, None)
        return True

    async def list_all(self) -> List[Session]:
        return [copy.deepcopy(s) for s in self._sessions.values()]


class RedisSessionStorage:
    """Stores sessions as JSON strings in Redis with an id index set."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int = 0,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def save(self, session: Session) -> bool:
        try:
            payload = json.dumps(session_to_dict(session), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.warning("Session serialization failed for %s: %s", session.id, e)
            return False
        ok = await self._redis.set(self._key(session.id), payload, ttl_seconds=self._ttl)
        if ok:
            await self._redis.add_member(SESSION_INDEX_KEY, session.id)
        return ok

    async def load(self, session_id: str) -> Session | None:
        """Load session_id from Redis. Returns None if missing or unreadable."""
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return session_from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None

    async def set_active(self, session_id: str | None) -> bool:
        if session_id is None:
            return await self._redis.delete(ACTIVE_SESSION_KEY)
        return await self._redis.set(ACTIVE_SESSION_KEY, session_id)

    async def get_active(self) -> str | None:
        return await self._redis.get(ACTIVE_SESSION_KEY)

    async def delete(self, session_id: str) -> bool:
        ok = await self._redis.delete(self._key(session_id))
        await self._redis.remove_member(SESSION_INDEX_KEY, session_id)
        return ok

    async def list_all(self) -> List[Session]:
        sessions: List[Session] = []
        for session_id in sorted(await self._redis.members(SESSION_INDEX_KEY)):
            session = await self.load(session_id)
            if session is None:
                # expired through TTL or corrupted; drop it from the index
                await self._redis.remove_member(SESSION_INDEX_KEY, session_id)
                continue
            sessions.append(session)
        return sessions

    async def close(self) -> None:
        await self._redis.close()


async def create_session_storage() -> SessionStorage:
    """Return Redis-backed storage when REDIS_URL is set and reachable, else in-memory."""
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        logger.info("REDIS_URL not set; sessions are kept in memory only")
        return InMemoryStorage()
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Session storage falling back to memory (Redis unavailable): %s", e)
        return InMemoryStorage()
    return RedisSessionStorage(
        redis_crud=redis_crud,
        ttl_seconds=get_settings().session_ttl_seconds,
    )


async def close_session_storage(storage: SessionStorage) -> None:
    """Close the Redis connection behind storage, if any. Idempotent."""
    if isinstance(storage, RedisSessionStorage):
        await storage.close()
        logger.debug("Session storage (Redis) closed")
