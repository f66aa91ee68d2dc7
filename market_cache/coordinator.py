"""
Get-or-fetch coordination with request deduplication.

When several callers ask for the same missing or stale key at once, only one
upstream fetch runs and every caller awaits the same result.  Successful
results are written back into the :class:`~market_cache.cache.CacheStore`;
failures propagate to every waiter unchanged and are never cached.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Union

from market_cache.cache import CacheStats, CacheStore, V, normalize_key

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Union[Awaitable[V], V]]

_MISSING = object()


class CacheSource(Enum):
    """Where a value returned by the coordinator came from."""

    CACHE = "cache"                # Fresh entry in the store
    DEDUPLICATED = "deduplicated"  # Joined a fetch started by another caller
    UPSTREAM = "upstream"          # This call started the fetch


@dataclass
class CacheResult(Generic[V]):
    """A value plus the diagnostic origin of that value."""

    value: V
    source: CacheSource

    @property
    def cached(self) -> bool:
        return self.source is CacheSource.CACHE


@dataclass
class WarmupItem:
    """One entry to populate proactively via :meth:`FetchCoordinator.warm_up`."""

    key: str
    fetcher: Fetcher
    ttl: Optional[float] = None
    tags: Optional[Sequence[str]] = None


class FetchCoordinator(Generic[V]):
    """
    Single entry point for reading through a :class:`CacheStore`.

    Pattern:
    - Fresh hit: return the stored value, no upstream call
    - Miss, stale or forced refresh: join the in-flight fetch for the key if
      one exists, otherwise start one and register it
    - Fetch settles: store the value on success, then always release the
      in-flight slot so a failed key is immediately retryable

    The in-flight table is only touched between suspension points, so under
    asyncio two callers can never both start a fetch for the same key.

    Usage:
        stock = FetchCoordinator(CacheStore(config, name="stock"))
        quote = await stock.get(
            "stock:AAPL",
            lambda: client.get_quote("AAPL"),
            ttl=120,
            tags=["stock", "symbol:AAPL"],
        )
    """

    def __init__(self, store: CacheStore[V], name: Optional[str] = None) -> None:
        self.store = store
        self.name = name or store.name
        self._pending: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Read-through
    # ------------------------------------------------------------------

    async def get(
        self,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[float] = None,
        tags: Optional[Sequence[str]] = None,
        force_refresh: bool = False,
    ) -> V:
        """
        Return the cached value for *key*, fetching it if necessary.

        Args:
            key: Cache key, normalized before use
            fetcher: Zero-argument callable returning the value or an awaitable
            ttl: Entry lifetime in seconds (defaults to the store's default)
            tags: Labels for later bulk invalidation
            force_refresh: Skip the cache read (still joins an in-flight fetch)

        Returns:
            The cached or freshly fetched value

        Raises:
            Exception: Any error from *fetcher* is propagated unchanged
        """
        result = await self.get_with_status(
            key, fetcher, ttl=ttl, tags=tags, force_refresh=force_refresh
        )
        return result.value

    async def get_with_status(
        self,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[float] = None,
        tags: Optional[Sequence[str]] = None,
        force_refresh: bool = False,
    ) -> CacheResult[V]:
        """Same as :meth:`get` but also reports where the value came from."""
        cache_key = normalize_key(key)

        if force_refresh:
            logger.info("[%s] Force refresh requested for %s", self.name, cache_key)
        else:
            value = self.store.get_only(cache_key, default=_MISSING)
            if value is not _MISSING:
                self.store.record_lookup(hit=True)
                logger.debug("[%s] Cache hit for %s", self.name, cache_key)
                return CacheResult(value=value, source=CacheSource.CACHE)

        self.store.record_lookup(hit=False)

        in_flight = self._pending.get(cache_key)
        if in_flight is not None:
            logger.debug("[%s] Deduplicating request for %s", self.name, cache_key)
            value = await asyncio.shield(in_flight)
            return CacheResult(value=value, source=CacheSource.DEDUPLICATED)

        task = asyncio.ensure_future(self._fetch_and_store(cache_key, fetcher, ttl, tags))
        self._pending[cache_key] = task
        value = await asyncio.shield(task)
        return CacheResult(value=value, source=CacheSource.UPSTREAM)

    async def _fetch_and_store(
        self,
        cache_key: str,
        fetcher: Fetcher,
        ttl: Optional[float],
        tags: Optional[Sequence[str]],
    ) -> V:
        this_task = asyncio.current_task()
        try:
            result = fetcher()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning("[%s] Fetch failed for %s: %s", self.name, cache_key, e)
            raise
        else:
            # A clear() while in flight drops the slot; the result then goes
            # to the waiters only.
            if self._pending.get(cache_key) is this_task:
                self.store.set(cache_key, result, ttl=ttl, tags=tags)
                logger.info(
                    "[%s] Cached new data for %s (TTL: %.1fs)",
                    self.name,
                    cache_key,
                    ttl or self.store.config.default_ttl,
                )
            return result
        finally:
            if self._pending.get(cache_key) is this_task:
                del self._pending[cache_key]

    async def warm_up(self, items: Iterable[WarmupItem]) -> int:
        """
        Populate the cache for every item concurrently.

        A failing item is logged and skipped; the rest still load.

        Returns:
            Number of items that loaded successfully
        """
        items = list(items)
        logger.info("[%s] Warming up cache with %d entries", self.name, len(items))

        async def _warm(item: WarmupItem) -> bool:
            try:
                await self.get(item.key, item.fetcher, ttl=item.ttl, tags=item.tags)
            except Exception as e:
                logger.warning("[%s] Failed to warm up cache for %s: %s", self.name, item.key, e)
                return False
            return True

        outcomes = await asyncio.gather(*(_warm(item) for item in items))
        loaded = sum(1 for ok in outcomes if ok)
        logger.info("[%s] Cache warmup completed: %d/%d loaded", self.name, loaded, len(items))
        return loaded

    # ------------------------------------------------------------------
    # Store pass-throughs
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: V,
        ttl: Optional[float] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> None:
        self.store.set(key, value, ttl=ttl, tags=tags)

    def get_only(self, key: str) -> Optional[V]:
        return self.store.get_only(key)

    def has(self, key: str) -> bool:
        return self.store.has(key)

    def delete(self, key: str) -> bool:
        return self.store.delete(key)

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        return self.store.invalidate_by_tags(tags)

    def sweep_expired(self) -> int:
        return self.store.sweep_expired()

    def clear(self) -> None:
        """Drop every entry and forget in-flight fetches.

        Fetches already running still resolve their waiters but no longer
        write into the store.
        """
        self.store.clear()
        self._pending.clear()

    def get_stats(self) -> CacheStats:
        stats = self.store.get_stats()
        stats.pending_requests = len(self._pending)
        return stats

    def pending_keys(self) -> List[str]:
        return list(self._pending.keys())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.start()

    async def close(self) -> None:
        """Stop the sweeper and cancel fetches still in flight."""
        if self.store.sweeper_running:
            await self.store.stop()

        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("[%s] Cancelled %d in-flight fetches", self.name, len(tasks))

    def describe(self) -> Dict[str, Any]:
        """Stats plus in-flight keys, for admin displays."""
        return {
            "name": self.name,
            "stats": self.get_stats().model_dump(mode="json"),
            "config": self.store.config.model_dump(),
            "pending_keys": self.pending_keys(),
        }
