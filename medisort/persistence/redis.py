import hashlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from uuid import uuid4

from opentelemetry.instrumentation.redis import RedisInstrumentor
from redis.asyncio import Connection, ConnectionPool, Redis, SSLConnection
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    BusyLoadingError,
    ConnectionError as RedisConnectionError,
    RedisError,
)

from medisort.helpers.cache import lru_acache
from medisort.helpers.config_models.cache import RedisModel
from medisort.helpers.logging import logger
from medisort.models.readiness import ReadinessEnum
from medisort.persistence.icache import ICache

# Instrument redis
RedisInstrumentor().instrument()


class RedisCache(ICache):
    """
    Cache shared across restarts and replicas.

    Keys are hashed and namespaced with the configured prefix. Errors are logged and reported as a miss or as a failed write, the caller then works from memory.
    """

    _config: RedisModel

    def __init__(self, config: RedisModel):
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the server answers and a value survives a round trip.

        The check key expires by itself, a failed check leaves nothing behind.
        """
        check_key = self._key(f"readiness-{uuid4()}")
        check_value = b"ok"
        try:
            async with self._use_client() as client:
                assert await client.ping()
                await client.set(check_key, check_value, px=5000)
                assert await client.get(check_key) == check_value
                await client.delete(check_key)
            return ReadinessEnum.OK
        except AssertionError:
            logger.exception("Readiness test failed")
        except RedisError:
            logger.exception("Error requesting Redis")
        return ReadinessEnum.FAIL

    async def get(self, key: str) -> bytes | None:
        try:
            async with self._use_client() as client:
                return await client.get(self._key(key)) or None
        except RedisError:
            logger.exception("Error getting value for %s", key)
        return None

    async def set(
        self,
        key: str,
        ttl_sec: int,
        value: str | bytes | None,
    ) -> bool:
        """
        Set a value in the cache.

        An empty value is a deletion, Redis does not need to keep it.
        """
        if not value:
            return await self.delete(key)
        try:
            async with self._use_client() as client:
                await client.set(
                    ex=ttl_sec,
                    name=self._key(key),
                    value=value,
                )
        except RedisError:
            logger.exception("Error setting value for %s", key)
            return False
        return True

    async def delete(self, key: str) -> bool:
        return await self.delete_many([key])

    async def delete_many(self, keys: list[str]) -> bool:
        """
        Delete multiple values with a single DEL command, Redis executes it atomically.
        """
        if not keys:
            return True
        try:
            async with self._use_client() as client:
                await client.delete(*(self._key(key) for key in keys))
        except RedisError:
            logger.exception("Error deleting %s", keys)
            return False
        return True

    @lru_acache()
    async def _use_connection_pool(self) -> ConnectionPool:
        logger.info(
            "Using Redis cache %s:%s/%s, prefix %s",
            self._config.host,
            self._config.port,
            self._config.database,
            self._config.prefix,
        )
        return ConnectionPool(
            # Database location
            db=self._config.database,
            host=self._config.host,
            port=self._config.port,
            # Reliability
            health_check_interval=10,
            retry=Retry(backoff=ExponentialBackoff(), retries=3),
            retry_on_error=[BusyLoadingError, RedisConnectionError],
            retry_on_timeout=True,
            socket_connect_timeout=5,
            socket_timeout=1,  # Respond quickly or abort, callers fall back to memory
            # Transport
            connection_class=SSLConnection if self._config.ssl else Connection,
            # Authentication
            password=self._config.password.get_secret_value()
            if self._config.password
            else None,
        )

    @asynccontextmanager
    async def _use_client(self) -> AsyncGenerator[Redis]:
        async with Redis(
            auto_close_connection_pool=False,
            connection_pool=await self._use_connection_pool(),
        ) as client:
            yield client

    def _key(self, key: str) -> str:
        """
        Namespaced and hashed key.

        Keys can hold a user name, the hash keeps it out of the server.
        """
        digest = hashlib.sha256(key.encode(), usedforsecurity=False).hexdigest()
        return f"{self._config.prefix}:{digest}"
