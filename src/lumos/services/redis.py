import logging
from typing import Any, Set

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async key/value and set-index operations against a Redis instance.

    Connection and timeout failures are logged and reported through the
    return value (None / False / empty set) instead of being raised.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set key to value, expiring after ttl_seconds when positive."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if key was deleted or did not exist."""
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False

    async def add_member(self, key: str, member: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.sadd(key, member)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis sadd %s failed: %s", key, e)
            return False

    async def remove_member(self, key: str, member: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.srem(key, member)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis srem %s failed: %s", key, e)
            return False

    async def members(self, key: str) -> Set[str]:
        """Return the members of the set at key (empty on error)."""
        if self._client is None:
            return set()
        try:
            return {str(m) for m in await self._client.smembers(key)}
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis smembers %s failed: %s", key, e)
            return set()


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
