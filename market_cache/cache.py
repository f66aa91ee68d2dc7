"""
In-memory TTL cache store with recency eviction and tag invalidation.

Sits between the fetch coordinator and process memory.  Every operation here
is synchronous and non-blocking; the only asynchronous piece is the optional
background sweeper that removes expired entries on a fixed interval.

Expiration is checked on every read: a stale entry is treated as a miss but
stays in the table until ``sweep_expired()`` runs (periodically via the
sweeper, or opportunistically before a capacity check).

Usage:
    from market_cache.cache import CacheStore, CacheConfig

    store = CacheStore(CacheConfig(max_entries=500, default_ttl=600), name="market")
    store.set("market:overview", payload, tags=["market"])
    store.get_only("MARKET:OVERVIEW")
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Generic, Iterable, List, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

V = TypeVar("V")

# Fraction of entries removed per eviction pass (least recently accessed first).
_EVICTION_FRACTION: float = 0.25

# Fallback size estimates (bytes) when a value cannot be JSON-encoded.
_SIZE_PER_CHAR: int = 2
_SIZE_NUMBER: int = 8
_SIZE_BOOLEAN: int = 4
_SIZE_OBJECT: int = 1024


class CacheConfig(BaseModel):
    """Capacity and lifetime limits for one cache instance."""

    max_entries: int = Field(default=1000, ge=1, description="Maximum number of entries")
    max_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1,
        description="Maximum total estimated size of all entries in bytes",
    )
    default_ttl: float = Field(default=300.0, gt=0, description="Default TTL in seconds")
    sweep_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between background sweeps of expired entries",
    )


class CacheStats(BaseModel):
    """Read-only aggregate describing the current state of a cache."""

    total_entries: int = 0
    total_size: int = 0
    total_requests: int = 0
    total_hits: int = 0
    total_misses: int = 0
    hit_rate: float = 0.0  # percent
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
    pending_requests: int = 0


@dataclass
class CacheEntry(Generic[V]):
    """A single cached value with lifetime, access and size metadata."""

    key: str
    value: V
    created_at: float
    ttl: float
    last_accessed_at: float
    size: int
    tags: FrozenSet[str] = field(default_factory=frozenset)
    access_count: int = 1

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        """An entry is stale once its age strictly exceeds its TTL."""
        return self.age(now) > self.ttl


def normalize_key(key: str) -> str:
    """Lower-case and strip *key* so ``" AAPL "`` and ``"aapl"`` collide."""
    return key.strip().lower()


def estimate_size(value: Any) -> int:
    """Estimate the serialized size of *value* in bytes.

    The value is JSON-encoded and its UTF-8 length measured.  Values that
    cannot be encoded (circular references, arbitrary objects) fall back to a
    fixed per-type estimate.  This function never raises.
    """
    try:
        if isinstance(value, BaseModel):
            encoded = value.model_dump_json()
        else:
            encoded = json.dumps(value)
        return len(encoded.encode("utf-8"))
    except (TypeError, ValueError, RecursionError) as exc:
        logger.warning(
            "Size estimation fell back to a fixed estimate for %s: %s",
            type(value).__name__,
            exc,
        )

    if isinstance(value, str):
        return len(value) * _SIZE_PER_CHAR
    if isinstance(value, bool):
        return _SIZE_BOOLEAN
    if isinstance(value, (int, float)):
        return _SIZE_NUMBER
    return _SIZE_OBJECT


class CacheStore(Generic[V]):
    """Keyed in-memory store with per-entry TTL, size accounting and tags.

    Storage layout:
        _entries: dict[str, CacheEntry]
            normalized key -> entry

    Capacity is enforced on ``set()``: when inserting would exceed either
    ``max_entries`` or ``max_bytes``, expired entries are swept and then the
    least recently accessed quarter of the table is evicted, repeatedly, until
    the new entry fits.  Eviction order is approximate LRU (a sort on
    ``last_accessed_at``), which is adequate for tables of a few thousand
    entries.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        name: str = "cache",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self._config: CacheConfig = config or CacheConfig()
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._total_bytes: int = 0

        self._total_requests: int = 0
        self._total_hits: int = 0
        self._total_misses: int = 0

        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> CacheConfig:
        return self._config

    def update_config(self, **changes: Any) -> CacheConfig:
        """Validate *changes* against :class:`CacheConfig` and apply them.

        Existing entries are kept even if they exceed a lowered limit; the new
        limits are enforced from the next ``set()`` onwards.
        """
        self._config = CacheConfig(**{**self._config.model_dump(), **changes})
        logger.info("[%s] Cache configuration updated: %s", self.name, self._config)
        return self._config

    # ------------------------------------------------------------------
    # Entry operations
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: V,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Insert or fully replace the entry for *key*.

        A falsy *ttl* falls back to ``config.default_ttl``.  Space is made
        before insertion; this method never fails for capacity reasons.
        """
        cache_key = normalize_key(key)
        entry_ttl = ttl or self._config.default_ttl
        size = estimate_size(value)

        # A replacement must not count against the capacity it frees.
        self._remove(cache_key)
        self._make_space(size)

        now = self._clock()
        self._entries[cache_key] = CacheEntry(
            key=cache_key,
            value=value,
            created_at=now,
            ttl=entry_ttl,
            last_accessed_at=now,
            size=size,
            tags=frozenset(tags or ()),
        )
        self._total_bytes += size
        logger.debug(
            "[%s] Cache set: key=%r ttl=%.1fs size=%dB", self.name, cache_key, entry_ttl, size
        )

    def get_only(self, key: str, default: Any = None) -> Optional[V]:
        """Return the value for *key* if present and fresh, else *default*.

        A hit bumps ``access_count`` and ``last_accessed_at``.  Stale entries
        are left in place for the sweeper.
        """
        cache_key = normalize_key(key)
        entry = self._entries.get(cache_key)
        if entry is None:
            return default

        now = self._clock()
        if entry.is_expired(now):
            logger.debug("[%s] Cache miss (expired): key=%r", self.name, cache_key)
            return default

        entry.access_count += 1
        entry.last_accessed_at = now
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(normalize_key(key))
        return entry is not None and not entry.is_expired(self._clock())

    def delete(self, key: str) -> bool:
        """Remove *key*; return whether an entry existed."""
        cache_key = normalize_key(key)
        removed = self._remove(cache_key)
        if removed:
            logger.debug("[%s] Cache delete: key=%r", self.name, cache_key)
        return removed

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry carrying at least one of *tags*."""
        wanted = frozenset(tags)
        doomed = [key for key, entry in self._entries.items() if entry.tags & wanted]
        for key in doomed:
            self._remove(key)

        if doomed:
            logger.info(
                "[%s] Invalidated %d entries by tags: %s",
                self.name,
                len(doomed),
                ", ".join(sorted(wanted)),
            )
        return len(doomed)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        self._total_bytes = 0
        logger.info("[%s] Cache cleared: removed %d entries", self.name, count)

    def sweep_expired(self) -> int:
        """Remove every stale entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)

        if expired:
            logger.info("[%s] Swept %d expired entries", self.name, len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Accounting and introspection
    # ------------------------------------------------------------------

    def record_lookup(self, hit: bool) -> None:
        """Count one request against this cache as a hit or a miss."""
        self._total_requests += 1
        if hit:
            self._total_hits += 1
        else:
            self._total_misses += 1

    def get_stats(self) -> CacheStats:
        hit_rate = (
            self._total_hits / self._total_requests * 100 if self._total_requests > 0 else 0.0
        )

        oldest: Optional[datetime] = None
        newest: Optional[datetime] = None
        if self._entries:
            created = [entry.created_at for entry in self._entries.values()]
            oldest = datetime.fromtimestamp(min(created), tz=timezone.utc)
            newest = datetime.fromtimestamp(max(created), tz=timezone.utc)

        return CacheStats(
            total_entries=len(self._entries),
            total_size=self._total_bytes,
            total_requests=self._total_requests,
            total_hits=self._total_hits,
            total_misses=self._total_misses,
            hit_rate=hit_rate,
            oldest_entry=oldest,
            newest_entry=newest,
        )

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def entries(self) -> List[CacheEntry[V]]:
        """Snapshot copies of all entries, for debugging displays."""
        return [replace(entry) for entry in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def start(self) -> None:
        """Start the periodic sweep of expired entries on the running loop."""
        if self.sweeper_running:
            logger.warning("[%s] Sweeper already running", self.name)
            return

        self._sweeper = asyncio.create_task(
            self._run_sweeper(), name=f"{self.name}-cache-sweeper"
        )
        logger.info(
            "[%s] Sweeper started (interval %.1fs)", self.name, self._config.sweep_interval
        )

    async def stop(self) -> None:
        """Cancel the sweeper task and wait for it to finish."""
        if self._sweeper is None:
            logger.warning("[%s] Sweeper not running", self.name)
            return

        self._sweeper.cancel()
        await asyncio.gather(self._sweeper, return_exceptions=True)
        self._sweeper = None
        logger.info("[%s] Sweeper stopped", self.name)

    async def _run_sweeper(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.sweep_interval)
            except asyncio.CancelledError:
                logger.debug("[%s] Sweeper cancelled", self.name)
                raise

            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("[%s] Error during cache sweep: %s", self.name, e, exc_info=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _remove(self, cache_key: str) -> bool:
        entry = self._entries.pop(cache_key, None)
        if entry is None:
            return False
        self._total_bytes -= entry.size
        return True

    def _over_capacity(self, incoming_size: int) -> bool:
        return (
            len(self._entries) >= self._config.max_entries
            or self._total_bytes + incoming_size > self._config.max_bytes
        )

    def _make_space(self, incoming_size: int) -> None:
        if not self._over_capacity(incoming_size):
            return

        logger.info(
            "[%s] Making space (entries: %d/%d, size: %d/%d)",
            self.name,
            len(self._entries),
            self._config.max_entries,
            self._total_bytes,
            self._config.max_bytes,
        )
        self.sweep_expired()

        while self._entries and self._over_capacity(incoming_size):
            self._evict_least_recently_used()

        if incoming_size > self._config.max_bytes:
            logger.warning(
                "[%s] Entry of %dB exceeds max_bytes=%d on its own; storing anyway",
                self.name,
                incoming_size,
                self._config.max_bytes,
            )

    def _evict_least_recently_used(self) -> None:
        ordered = sorted(self._entries.values(), key=lambda entry: entry.last_accessed_at)
        count = max(1, math.ceil(len(ordered) * _EVICTION_FRACTION))
        for entry in ordered[:count]:
            self._remove(entry.key)
        logger.info("[%s] Evicted %d least recently used entries", self.name, count)
