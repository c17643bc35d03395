"""
Grounding: the known accounts and tags that bias extraction.

The extractor puts this reference data into every prompt and the validator
checks extracted names against it. It changes rarely, so the provider keeps
a snapshot and refreshes it on a TTL.

DESIGN DECISION: A failed refresh keeps serving the previous snapshot and
logs the failure. Stale grounding only lowers confidence (names count as
ungrounded); it must never stop ingestion.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from ledger_intake.models.action import utc_now
from ledger_intake.services.storage import LedgerStorage


logger = structlog.get_logger(__name__)


class GroundingSnapshot(BaseModel):
    """Accounts and tags known at one point in time."""

    accounts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=utc_now)


class GroundingProvider(ABC):
    """Source of the current grounding snapshot."""

    @abstractmethod
    async def get(self) -> GroundingSnapshot:
        pass


class StaticGroundingProvider(GroundingProvider):
    """Fixed reference data, e.g. from configuration or tests."""

    def __init__(self, accounts: Iterable[str] = (), tags: Iterable[str] = ()):
        self._snapshot = GroundingSnapshot(accounts=list(accounts), tags=list(tags))

    async def get(self) -> GroundingSnapshot:
        return self._snapshot


GroundingLoader = Callable[[], Awaitable[GroundingSnapshot]]


class CachedGroundingProvider(GroundingProvider):
    """
    TTL cache in front of a loader.

    Concurrent callers share one refresh; the lock is only held while
    loading.
    """

    def __init__(
        self,
        loader: GroundingLoader,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[GroundingSnapshot] = None
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return (
            self._snapshot is not None
            and self._loaded_at is not None
            and self._clock() - self._loaded_at < self._ttl
        )

    def invalidate(self) -> None:
        self._loaded_at = None

    async def get(self) -> GroundingSnapshot:
        if self._is_fresh():
            return self._snapshot

        async with self._lock:
            if self._is_fresh():
                return self._snapshot
            try:
                self._snapshot = await self._loader()
            except Exception as e:
                if self._snapshot is None:
                    logger.warning("grounding_unavailable", error=str(e))
                    return GroundingSnapshot()
                logger.warning(
                    "grounding_refresh_failed",
                    error=str(e),
                    serving_from=self._snapshot.fetched_at.isoformat(),
                )
            else:
                logger.debug(
                    "grounding_refreshed",
                    accounts=len(self._snapshot.accounts),
                    tags=len(self._snapshot.tags),
                )
            # A failed refresh also waits out the TTL before trying again
            self._loaded_at = self._clock()
            return self._snapshot


class LedgerGroundingLoader:
    """Loads vault names from the ledger plus configured tags."""

    def __init__(
        self,
        storage: LedgerStorage,
        tags: Iterable[str] = (),
        extra_accounts: Iterable[str] = (),
    ):
        self._storage = storage
        self._tags = list(tags)
        self._extra_accounts = list(extra_accounts)

    async def __call__(self) -> GroundingSnapshot:
        vaults = await self._storage.list_vaults()
        accounts = list(dict.fromkeys(
            [vault.name for vault in vaults] + self._extra_accounts
        ))
        return GroundingSnapshot(accounts=accounts, tags=list(self._tags))
