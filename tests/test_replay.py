"""Tests for replay protection."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from hookseal.replay import (
    DEFAULT_TOLERANCE,
    AtomicNonceStorage,
    InMemoryNonceStorage,
    NonceStorage,
    ReplayGuard,
    SweepableNonceStorage,
    build_nonce,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class DictStorage:
    """Minimal store honoring only has/set."""

    def __init__(self) -> None:
        self.items: dict[str, int] = {}

    async def has(self, nonce: str) -> bool:
        return nonce in self.items

    async def set(self, nonce: str, expires_at: int) -> None:
        self.items[nonce] = expires_at


class TestBuildNonce:
    """Tests for build_nonce."""

    def test_format(self):
        """Nonces are provider:signature:milliseconds."""
        timestamp = datetime.fromtimestamp(1700000000, tz=UTC)
        assert build_nonce("stripe", "abc", timestamp) == "stripe:abc:1700000000000"

    def test_provider_separates_keys(self):
        """The same signature under two providers gives two nonces."""
        timestamp = datetime.fromtimestamp(1700000000, tz=UTC)
        assert build_nonce("stripe", "abc", timestamp) != build_nonce("slack", "abc", timestamp)


class TestInMemoryNonceStorage:
    """Tests for InMemoryNonceStorage."""

    @pytest.mark.asyncio
    async def test_set_and_has(self):
        """A stored nonce is seen until it expires."""
        clock = FakeClock()
        async with InMemoryNonceStorage(clock=clock) as storage:
            assert await storage.has("n1") is False
            await storage.set("n1", int(clock() * 1000) + 1000)
            assert await storage.has("n1") is True
            assert len(storage) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_absent(self):
        """Expired entries are ignored even before the sweep runs."""
        clock = FakeClock()
        async with InMemoryNonceStorage(clock=clock) as storage:
            await storage.set("n1", int(clock() * 1000) + 1000)
            clock.now += 2
            assert await storage.has("n1") is False

    @pytest.mark.asyncio
    async def test_add_if_absent(self):
        """Only the first insert of a nonce succeeds."""
        clock = FakeClock()
        async with InMemoryNonceStorage(clock=clock) as storage:
            expires = int(clock() * 1000) + 1000
            assert await storage.add_if_absent("n1", expires) is True
            assert await storage.add_if_absent("n1", expires) is False

    @pytest.mark.asyncio
    async def test_add_if_absent_replaces_expired(self):
        """An expired nonce can be inserted again."""
        clock = FakeClock()
        async with InMemoryNonceStorage(clock=clock) as storage:
            await storage.add_if_absent("n1", int(clock() * 1000) + 1000)
            clock.now += 5
            assert await storage.add_if_absent("n1", int(clock() * 1000) + 1000) is True

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired(self):
        """cleanup() removes only expired entries."""
        clock = FakeClock()
        async with InMemoryNonceStorage(clock=clock) as storage:
            now_ms = int(clock() * 1000)
            await storage.set("old", now_ms - 1)
            await storage.set("fresh", now_ms + 60_000)

            removed = await storage.cleanup()

            assert removed == 1
            assert len(storage) == 1
            assert await storage.has("fresh") is True

    @pytest.mark.asyncio
    async def test_background_sweep(self):
        """The sweep task removes expired entries on its own."""
        clock = FakeClock()
        async with InMemoryNonceStorage(sweep_interval=0.01, clock=clock) as storage:
            await storage.set("old", int(clock() * 1000) - 1)
            assert len(storage) == 1

            await asyncio.sleep(0.05)

            assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_sweep(self):
        """stop() cancels the sweep and clears the table."""
        storage = InMemoryNonceStorage()
        storage.start()
        assert storage.is_running is True

        await storage.set("n1", 2**62)
        await storage.stop()

        assert storage.is_running is False
        assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_started_on_first_use(self):
        """The sweep starts on first use."""
        storage = InMemoryNonceStorage()
        assert storage.is_running is False
        await storage.has("n1")
        assert storage.is_running is True
        await storage.stop()

    def test_satisfies_protocol(self):
        """Both stores satisfy NonceStorage."""
        assert isinstance(InMemoryNonceStorage(), NonceStorage)
        assert isinstance(DictStorage(), NonceStorage)

    def test_optional_capabilities(self):
        """The in-memory store is atomic and sweepable, a plain store is neither."""
        assert isinstance(InMemoryNonceStorage(), AtomicNonceStorage)
        assert isinstance(InMemoryNonceStorage(), SweepableNonceStorage)
        assert not isinstance(DictStorage(), AtomicNonceStorage)
        assert not isinstance(DictStorage(), SweepableNonceStorage)


class TestReplayGuard:
    """Tests for ReplayGuard."""

    @pytest.mark.asyncio
    async def test_check_and_record(self):
        """A recorded nonce is seen afterwards."""
        async with ReplayGuard() as guard:
            assert guard.tolerance == DEFAULT_TOLERANCE
            assert await guard.check("n1") is False
            await guard.record("n1")
            assert await guard.check("n1") is True

    @pytest.mark.asyncio
    async def test_record_expiry_uses_tolerance(self):
        """Expiry is now plus the tolerance."""
        clock = FakeClock()
        storage = DictStorage()
        guard = ReplayGuard(storage=storage, tolerance=60, clock=clock)

        await guard.record("n1")
        await guard.record("n2", tolerance=10)

        now_ms = int(clock() * 1000)
        assert storage.items["n1"] == now_ms + 60_000
        assert storage.items["n2"] == now_ms + 10_000

    @pytest.mark.asyncio
    async def test_atomic_check_and_record(self):
        """check_and_record reports the second sighting."""
        async with ReplayGuard(tolerance=60) as guard:
            assert await guard.check_and_record("n1") is False
            assert await guard.check_and_record("n1") is True

    @pytest.mark.asyncio
    async def test_concurrent_duplicates(self):
        """Only one of many simultaneous identical nonces is accepted."""
        async with ReplayGuard(tolerance=60) as guard:
            seen = await asyncio.gather(*(guard.check_and_record("n1") for _ in range(20)))
            assert seen.count(False) == 1
            assert seen.count(True) == 19

    @pytest.mark.asyncio
    async def test_fallback_for_two_operation_storage(self):
        """Stores with only has/set still work."""
        guard = ReplayGuard(storage=DictStorage(), tolerance=60)
        assert await guard.check_and_record("n1") is False
        assert await guard.check_and_record("n1") is True
        assert await guard.cleanup() == 0

    @pytest.mark.asyncio
    async def test_close_leaves_external_storage_running(self):
        """A storage passed in is left running."""
        async with InMemoryNonceStorage() as storage:
            guard = ReplayGuard(storage=storage)
            await guard.record("n1")
            await guard.close()

            assert storage.is_running is True
            assert await storage.has("n1") is True

    @pytest.mark.asyncio
    async def test_close_stops_owned_storage(self):
        """The guard stops the storage it created."""
        guard = ReplayGuard()
        await guard.record("n1")
        await guard.close()

        assert isinstance(guard.storage, InMemoryNonceStorage)
        assert guard.storage.is_running is False
