"""Expiry-aware token cache with single-flight fetches."""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Generic, Hashable, Protocol, TypeVar

from managed_federation.errors import RequestCancelledError
from managed_federation.tokens import utcnow


logger = logging.getLogger(__name__)


class ExpiringToken(Protocol):
    """Anything with an expiry check, e.g. ManagedIdentityToken."""

    def is_expired(self, now: datetime, margin_seconds: float = 0) -> bool:
        ...


def _retrieve_exception(task: asyncio.Task) -> None:
    # Marks the exception as seen when every waiter has already left
    if not task.cancelled():
        task.exception()


K = TypeVar("K", bound=Hashable)
V = TypeVar("V", bound=ExpiringToken)


@dataclass
class CacheStats:
    """Counters exposed on the metrics endpoint."""

    size: int = 0
    hits: int = 0
    misses: int = 0
    fetches: int = 0
    evictions: int = 0
    in_flight: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "fetches": self.fetches,
            "evictions": self.evictions,
            "in_flight": self.in_flight,
        }


class TokenCache(Generic[K, V]):
    """Bounded token cache guaranteeing at most one in-flight fetch per key.

    All state is confined to the running event loop:
    - Expired entries (including the refresh margin) are treated as absent
    - Concurrent misses for the same key share one fetch and its outcome
    - Failed or cancelled fetches are never stored
    - When full, expired entries are purged, then least recently used ones
    """

    def __init__(
        self,
        stage: str,
        refresh_margin_seconds: float = 0,
        max_entries: int = 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the cache.

        Args:
            stage: Exchange stage this cache serves ("assertion" or "grant")
            refresh_margin_seconds: Consider entries stale this long before expiry
            max_entries: Maximum number of cached keys
            clock: Source of the current UTC time
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self._stage = stage
        self._margin = refresh_margin_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[K, V] = OrderedDict()
        self._in_flight: dict[K, asyncio.Task[V]] = {}
        self._waiters: dict[asyncio.Task[V], int] = {}
        self._stats = CacheStats()

    def get(self, key: K) -> V | None:
        """Return the live entry for key, dropping it if expired.

        Args:
            key: Cache key

        Returns:
            Cached value or None
        """
        value = self._entries.get(key)
        if value is None:
            return None

        if value.is_expired(self._clock(), self._margin):
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return value

    async def get_or_fetch(self, key: K, fetch: Callable[[], Awaitable[V]]) -> V:
        """Return a live entry or fetch one, sharing in-flight fetches.

        The fetch runs in its own task, so a waiter that is cancelled or
        times out never cancels it for the others. It is cancelled only
        once every waiter has gone.

        Args:
            key: Cache key
            fetch: Zero-argument coroutine function producing a fresh value

        Returns:
            Cached or freshly fetched value

        Raises:
            RequestCancelledError: If the shared fetch was cancelled
            Exception: Whatever the fetch raised, re-raised to every waiter
        """
        value = self.get(key)
        if value is not None:
            self._stats.hits += 1
            return value

        self._stats.misses += 1

        task = self._in_flight.get(key)
        if task is None:
            self._stats.fetches += 1
            task = asyncio.create_task(self._fetch_and_store(key, fetch))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
            self._waiters[task] = 0
        else:
            logger.debug(f"Joining in-flight {self._stage} fetch")

        self._waiters[task] += 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if self._waiters[task] == 1 and not task.done():
                logger.debug(f"Cancelling {self._stage} fetch with no waiters left")
                if self._in_flight.get(key) is task:
                    del self._in_flight[key]
                task.cancel()
            raise
        finally:
            self._waiters[task] -= 1
            if not self._waiters[task]:
                del self._waiters[task]

    async def _fetch_and_store(self, key: K, fetch: Callable[[], Awaitable[V]]) -> V:
        try:
            value = await fetch()
        except asyncio.CancelledError:
            raise RequestCancelledError(stage=self._stage) from None
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

        self._store(key, value)
        return value

    def _store(self, key: K, value: V) -> None:
        """Insert a value, enforcing the size bound."""
        self._entries[key] = value
        self._entries.move_to_end(key)

        if len(self._entries) <= self._max_entries:
            return

        now = self._clock()
        for stale_key in [k for k, v in self._entries.items() if v.is_expired(now, self._margin)]:
            del self._entries[stale_key]
            self._stats.evictions += 1

        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug(f"Evicted least recently used {self._stage} cache entry")

    def invalidate(self, key: K) -> None:
        """Drop the entry for key, if any."""
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> CacheStats:
        """Snapshot of the cache counters."""
        return CacheStats(
            size=len(self._entries),
            hits=self._stats.hits,
            misses=self._stats.misses,
            fetches=self._stats.fetches,
            evictions=self._stats.evictions,
            in_flight=len(self._in_flight),
        )
