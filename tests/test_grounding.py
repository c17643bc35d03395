"""Tests for grounding providers."""

import asyncio

import pytest

from ledger_intake.services.grounding import (
    CachedGroundingProvider,
    GroundingSnapshot,
    LedgerGroundingLoader,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ScriptedLoader:
    """Returns numbered snapshots, or raises while `failing` is set."""

    def __init__(self):
        self.calls = 0
        self.failing = False

    async def __call__(self) -> GroundingSnapshot:
        self.calls += 1
        if self.failing:
            raise ConnectionError("ledger unreachable")
        await asyncio.sleep(0)
        return GroundingSnapshot(accounts=[f"Account{self.calls}"], tags=["Food"])


class TestCachedGroundingProvider:
    """TTL caching and stale-on-failure."""

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self):
        """Calls within the TTL share one load."""
        loader, clock = ScriptedLoader(), FakeClock()
        provider = CachedGroundingProvider(loader, ttl_seconds=60, clock=clock)

        first = await provider.get()
        clock.now += 59
        second = await provider.get()

        assert first is second
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_refreshes_after_ttl(self):
        """An expired snapshot is reloaded."""
        loader, clock = ScriptedLoader(), FakeClock()
        provider = CachedGroundingProvider(loader, ttl_seconds=60, clock=clock)

        await provider.get()
        clock.now += 61
        snapshot = await provider.get()

        assert snapshot.accounts == ["Account2"]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self):
        """A burst of callers triggers a single load."""
        loader = ScriptedLoader()
        provider = CachedGroundingProvider(loader, ttl_seconds=60, clock=FakeClock())

        snapshots = await asyncio.gather(*(provider.get() for _ in range(5)))

        assert loader.calls == 1
        assert len({id(s) for s in snapshots}) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_serves_stale(self):
        """A failing loader keeps the previous snapshot in service."""
        loader, clock = ScriptedLoader(), FakeClock()
        provider = CachedGroundingProvider(loader, ttl_seconds=60, clock=clock)

        await provider.get()
        loader.failing = True
        clock.now += 61
        snapshot = await provider.get()

        assert snapshot.accounts == ["Account1"]

    @pytest.mark.asyncio
    async def test_first_load_failure_is_empty(self):
        """Without any snapshot, an empty one is served."""
        loader = ScriptedLoader()
        loader.failing = True
        provider = CachedGroundingProvider(loader, ttl_seconds=60, clock=FakeClock())

        snapshot = await provider.get()

        assert snapshot.accounts == []
        assert snapshot.tags == []

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self):
        """invalidate() drops freshness."""
        loader = ScriptedLoader()
        provider = CachedGroundingProvider(loader, ttl_seconds=60, clock=FakeClock())

        await provider.get()
        provider.invalidate()
        await provider.get()

        assert loader.calls == 2


class TestLedgerGroundingLoader:
    """Vault names from the ledger."""

    @pytest.mark.asyncio
    async def test_vaults_and_extras(self, store):
        """Vaults come first; configured extras are appended once."""
        await store.ensure_vault("Bank")
        await store.ensure_vault("Borrowings", allow_overdraft=True)

        loader = LedgerGroundingLoader(store, tags=["Food"], extra_accounts=["Cash", "Bank"])
        snapshot = await loader()

        assert set(snapshot.accounts) == {"Bank", "Borrowings", "Cash"}
        assert len(snapshot.accounts) == 3
        assert snapshot.tags == ["Food"]
