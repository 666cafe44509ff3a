"""Redis-backed nonce storage.

Shares the replay table between processes. Keys carry a PX expiry so
Redis removes them itself and no sweep task is needed. add_if_absent is a
single ``SET key 1 NX PX ttl`` which closes the race between two identical
deliveries arriving at different workers at the same instant.

Example:
    storage = RedisNonceStorage(url="redis://localhost:6379/0")
    guard = ReplayGuard(storage=storage, tolerance=300)
"""

from __future__ import annotations

import time
from collections.abc import Callable

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

DEFAULT_PREFIX = "hookseal:nonce:"


class RedisNonceStorage:
    """NonceStorage implementation on top of redis.asyncio."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        url: str = "redis://localhost:6379/0",
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the storage.

        Args:
            client: Existing client. When omitted one is created lazily from
                ``url`` and closed by close().
            url: Redis connection URL.
            prefix: Key prefix for nonces.
            clock: Epoch-seconds time source used to turn expiry instants
                into TTLs.
        """
        self._client = client
        self._owns_client = client is None
        self._url = url
        self._prefix = prefix
        self._clock = clock

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._url)
        return self._client

    def _key(self, nonce: str) -> str:
        return f"{self._prefix}{nonce}"

    def _ttl_ms(self, expires_at: int) -> int:
        return expires_at - int(self._clock() * 1000)

    async def has(self, nonce: str) -> bool:
        return bool(await self._get_client().exists(self._key(nonce)))

    async def set(self, nonce: str, expires_at: int) -> None:
        ttl = self._ttl_ms(expires_at)
        if ttl <= 0:
            return
        await self._get_client().set(self._key(nonce), 1, px=ttl)

    async def add_if_absent(self, nonce: str, expires_at: int) -> bool:
        """Insert the nonce unless present. True if inserted."""
        ttl = self._ttl_ms(expires_at)
        if ttl <= 0:
            return True
        inserted = await self._get_client().set(self._key(nonce), 1, px=ttl, nx=True)
        return bool(inserted)

    async def cleanup(self) -> int:
        """Redis expires keys on its own."""
        return 0

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis nonce storage closed")
