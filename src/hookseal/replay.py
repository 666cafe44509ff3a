"""Replay protection using expiring nonces.

A nonce is recorded for every verified webhook that carries a timestamp.
A second delivery of the same signed payload inside the tolerance window
finds its nonce already present and is rejected.

The guard is a thin policy layer. Expiry is the storage's job: the default
InMemoryNonceStorage sweeps expired entries from a background task, while
networked stores (see hookseal.redis_storage) expire keys themselves.

Example:
    async with ReplayGuard(tolerance=300) as guard:
        nonce = build_nonce("stripe", signature, timestamp)
        if await guard.check_and_record(nonce):
            raise ReplayAttackError("stripe")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger()

DEFAULT_TOLERANCE = 300
SWEEP_INTERVAL = 60.0


def build_nonce(provider: str, signature: str, timestamp: datetime) -> str:
    """Build the nonce key for a verified delivery.

    Format: ``{provider}:{signature}:{timestamp_ms}``. The provider prefix
    keeps providers apart when they share one storage backend.
    """
    timestamp_ms = int(timestamp.timestamp() * 1000)
    return f"{provider}:{signature}:{timestamp_ms}"


@runtime_checkable
class NonceStorage(Protocol):
    """Storage contract for seen nonces.

    Expiry instants are epoch milliseconds. Implementations must be safe
    for concurrent use from independent requests.
    """

    async def has(self, nonce: str) -> bool: ...

    async def set(self, nonce: str, expires_at: int) -> None: ...


@runtime_checkable
class AtomicNonceStorage(NonceStorage, Protocol):
    """Storage that can check and record a nonce in one step."""

    async def add_if_absent(self, nonce: str, expires_at: int) -> bool:
        """Insert the nonce unless a live entry exists. True if inserted."""
        ...


@runtime_checkable
class SweepableNonceStorage(Protocol):
    """Storage that removes expired entries on request."""

    async def cleanup(self) -> int: ...


class InMemoryNonceStorage:
    """Process-local nonce table with a periodic sweep.

    The sweep task starts on first use and is cancelled by stop(). It
    never blocks request handling: each pass only holds the lock for one
    scan of the table.
    """

    def __init__(
        self,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._nonces: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sweep_task: asyncio.Task[None] | None = None
        self._closed = False

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def start(self) -> None:
        """Start the background sweep. Must be called from a running loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._closed = False
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweep and drop all nonces."""
        self._closed = True
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._nonces.clear()

    async def __aenter__(self) -> InMemoryNonceStorage:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._sweep_interval)
            try:
                removed = await self.cleanup()
            except Exception as e:
                logger.error("Nonce sweep failed", error=str(e))
                continue
            if removed:
                logger.debug("Expired nonces removed", count=removed)

    def _ensure_started(self) -> None:
        if not self._closed and self._sweep_task is None:
            self.start()

    def _live(self, nonce: str, now: int) -> bool:
        expires_at = self._nonces.get(nonce)
        return expires_at is not None and expires_at >= now

    async def has(self, nonce: str) -> bool:
        self._ensure_started()
        async with self._lock:
            return self._live(nonce, self._now_ms())

    async def set(self, nonce: str, expires_at: int) -> None:
        self._ensure_started()
        async with self._lock:
            self._nonces[nonce] = expires_at

    async def add_if_absent(self, nonce: str, expires_at: int) -> bool:
        """Insert the nonce unless a live entry exists. True if inserted."""
        self._ensure_started()
        async with self._lock:
            if self._live(nonce, self._now_ms()):
                return False
            self._nonces[nonce] = expires_at
            return True

    async def cleanup(self) -> int:
        """Delete expired entries. Returns the number removed."""
        async with self._lock:
            now = self._now_ms()
            expired = [nonce for nonce, expires_at in self._nonces.items() if expires_at < now]
            for nonce in expired:
                del self._nonces[nonce]
            return len(expired)

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def __len__(self) -> int:
        return len(self._nonces)


class ReplayGuard:
    """Policy layer that records nonces with an expiry of now + tolerance."""

    def __init__(
        self,
        storage: NonceStorage | None = None,
        tolerance: int = DEFAULT_TOLERANCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the guard.

        Args:
            storage: Nonce storage. Defaults to a new InMemoryNonceStorage
                owned (and stopped) by this guard.
            tolerance: Seconds a nonce is remembered.
            clock: Epoch-seconds time source.
        """
        self._owns_storage = storage is None
        self.storage: NonceStorage = storage if storage is not None else InMemoryNonceStorage(
            clock=clock
        )
        self.tolerance = tolerance
        self._clock = clock

    def _expires_at(self, tolerance: int | None) -> int:
        seconds = self.tolerance if tolerance is None else tolerance
        return int(self._clock() * 1000) + seconds * 1000

    async def check(self, nonce: str) -> bool:
        """Return True if the nonce was already seen."""
        return await self.storage.has(nonce)

    async def record(self, nonce: str, tolerance: int | None = None) -> None:
        await self.storage.set(nonce, self._expires_at(tolerance))

    async def check_and_record(self, nonce: str, tolerance: int | None = None) -> bool:
        """Atomically record the nonce. Returns True if it was already seen.

        Stores without add_if_absent fall back to check then record, which
        is only race-free when the store does not yield between the two.
        """
        if isinstance(self.storage, AtomicNonceStorage):
            inserted = await self.storage.add_if_absent(nonce, self._expires_at(tolerance))
            return not inserted

        if await self.check(nonce):
            return True
        await self.record(nonce, tolerance)
        return False

    async def cleanup(self) -> int:
        if not isinstance(self.storage, SweepableNonceStorage):
            return 0
        return await self.storage.cleanup()

    def start(self) -> None:
        if isinstance(self.storage, InMemoryNonceStorage):
            self.storage.start()

    async def close(self) -> None:
        """Stop the storage if this guard created it."""
        if self._owns_storage and isinstance(self.storage, InMemoryNonceStorage):
            await self.storage.stop()

    async def __aenter__(self) -> ReplayGuard:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
