"""
Redis storage provider.

Shared backend for orchestrators running in several processes. Stake
balances move with ``INCRBY`` and epoch claims are taken with
``SET NX``, so two workers never both apply the same epoch.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from beliefmesh.exceptions import StorageError

from .provider import AbstractStorageProvider, StorageConfig

logger = logging.getLogger(__name__)


class RedisStorageProvider(AbstractStorageProvider):
    """
    Provider over a pooled ``redis.asyncio`` client.

    Responses are decoded, so every value and hash field comes back as
    ``str``. Calls made before :meth:`connect` raise ``StorageError``.
    """

    def __init__(self, config: StorageConfig):
        super().__init__(config)
        self._client: Optional[aioredis.Redis] = None
        self._pool: Optional[aioredis.ConnectionPool] = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise StorageError("Redis provider is not connected")
        return self._client

    async def connect(self) -> None:
        cfg = self.config
        self._pool = aioredis.ConnectionPool(
            host=cfg.redis_host,
            port=cfg.redis_port,
            db=cfg.redis_db,
            password=cfg.redis_password,
            ssl=cfg.redis_ssl,
            max_connections=cfg.pool_size,
            socket_timeout=cfg.timeout_seconds,
            socket_connect_timeout=cfg.timeout_seconds,
            decode_responses=True,
        )
        self._client = aioredis.Redis(connection_pool=self._pool)
        await self._client.ping()
        logger.info("Connected to Redis at %s:%s db=%s", cfg.redis_host, cfg.redis_port, cfg.redis_db)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.ping()
        except RedisError:
            logger.debug("Redis ping failed", exc_info=True)
            return False
        return True

    # Plain values: beliefs, stakes, claims

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str) -> bool:
        return bool(await self.client.set(key, value))

    async def set_if_absent(self, key: str, value: str) -> bool:
        return bool(await self.client.set(key, value, nx=True))

    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self.client.exists(key) > 0

    async def incrby(self, key: str, amount: int) -> int:
        return await self.client.incrby(key, amount)

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        if not keys:
            return []
        return await self.client.mget(keys)

    # Hashes: submissions, locks, history, events

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.client.hget(key, field)

    async def hset(self, key: str, field: str, value: str) -> bool:
        await self.client.hset(key, field, value)
        return True

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.client.hgetall(key)

    async def hdel(self, key: str, field: str) -> bool:
        return await self.client.hdel(key, field) > 0
