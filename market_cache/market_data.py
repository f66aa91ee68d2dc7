"""
Market data service: the composition root for the three quote caches.

Owns one Store+Coordinator pair per cache profile (general, stock, market),
each with isolated tables, and exposes the quote reads used by widgets plus
the administrative cache operations (stats, clear, invalidation, pre-warm).

Nothing here is a module-level singleton; the FastAPI lifespan in
:mod:`market_cache.main` builds one service per application.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from market_cache.cache import CacheConfig, CacheStats, CacheStore
from market_cache.config import Settings
from market_cache.coordinator import CacheResult, FetchCoordinator, WarmupItem
from market_cache.fmp_client import MARKET_INDICES, FMPClient
from market_cache.keys import (
    crypto_key,
    get_tags,
    history_key,
    market_key,
    stock_key,
    symbol_tag,
)

logger = logging.getLogger(__name__)


class UpstreamUnavailableError(RuntimeError):
    """The upstream provider returned no usable data for a request."""


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class Quote(BaseModel):
    """A stock, index or crypto quote as shown by quote widgets."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    symbol: str
    name: Optional[str] = None
    price: float
    change: float = 0.0
    change_percent: float = Field(default=0.0, alias="changePercentage")
    volume: Optional[float] = None
    market_cap: Optional[float] = Field(default=None, alias="marketCap")
    day_high: Optional[float] = Field(default=None, alias="dayHigh")
    day_low: Optional[float] = Field(default=None, alias="dayLow")
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MarketOverview(BaseModel):
    """Headline index quotes keyed by display name (SPX, NASDAQ, DOW)."""

    indices: Dict[str, Quote]
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Cache construction
# ---------------------------------------------------------------------------


def cache_profiles(settings: Settings) -> Dict[str, CacheConfig]:
    """Capacity and TTL limits for each cache, from settings."""
    return {
        "general": CacheConfig(
            max_entries=settings.general_cache_max_entries,
            max_bytes=settings.general_cache_max_bytes,
            default_ttl=settings.general_cache_ttl,
            sweep_interval=settings.cache_sweep_interval,
        ),
        "stock": CacheConfig(
            max_entries=settings.stock_cache_max_entries,
            max_bytes=settings.stock_cache_max_bytes,
            default_ttl=settings.stock_cache_ttl,
            sweep_interval=settings.cache_sweep_interval,
        ),
        "market": CacheConfig(
            max_entries=settings.market_cache_max_entries,
            max_bytes=settings.market_cache_max_bytes,
            default_ttl=settings.market_cache_ttl,
            sweep_interval=settings.cache_sweep_interval,
        ),
    }


def build_cache(
    name: str,
    config: CacheConfig,
    clock: Callable[[], float] = time.time,
) -> FetchCoordinator:
    """Create an independent Store+Coordinator pair."""
    return FetchCoordinator(CacheStore(config, name=name, clock=clock))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class MarketDataService:
    """
    Cached access to quotes, crypto pairs, market overview and price history.

    Every read goes through a :class:`FetchCoordinator`, so repeated reads
    inside the TTL are served from memory and concurrent reads of the same
    key share one upstream call.  Upstream failures raise
    :class:`UpstreamUnavailableError` and are never cached.
    """

    def __init__(
        self,
        client: FMPClient,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            client: Upstream quote client
            settings: Application settings (TTLs, limits, pre-warm symbols)
            clock: Time source shared by the three stores
        """
        self.client = client
        self.settings = settings

        profiles = cache_profiles(settings)
        self.general: FetchCoordinator[Any] = build_cache("general", profiles["general"], clock)
        self.stock: FetchCoordinator[Quote] = build_cache("stock", profiles["stock"], clock)
        self.market: FetchCoordinator[MarketOverview] = build_cache(
            "market", profiles["market"], clock
        )

    @property
    def caches(self) -> Dict[str, FetchCoordinator]:
        return {"general": self.general, "stock": self.stock, "market": self.market}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start every cache sweeper and optionally pre-warm popular symbols."""
        for cache in self.caches.values():
            await cache.start()

        if self.settings.prewarm_on_startup:
            await self.pre_warm_cache()

    async def stop(self) -> None:
        for cache in self.caches.values():
            await cache.close()
        logger.info("Market data caches stopped")

    # ------------------------------------------------------------------
    # Upstream fetchers
    # ------------------------------------------------------------------

    async def _fetch_stock_quote(self, symbol: str) -> Quote:
        payload = await self.client.get_quote(symbol)
        if not payload:
            raise UpstreamUnavailableError(f"No quote available for {symbol}")
        return Quote.model_validate(payload[0])

    async def _fetch_crypto_quote(self, symbol: str, currency: str) -> Quote:
        payload = await self.client.get_crypto_quote(symbol, currency)
        if not payload:
            raise UpstreamUnavailableError(f"No crypto quote available for {symbol}/{currency}")
        return Quote.model_validate(payload[0])

    async def _fetch_market_overview(self) -> MarketOverview:
        payload = await self.client.get_index_quotes()
        if not payload:
            raise UpstreamUnavailableError("No index quotes available for market overview")

        by_symbol = {item.get("symbol"): item for item in payload}
        indices: Dict[str, Quote] = {}
        for label, index_symbol in MARKET_INDICES.items():
            item = by_symbol.get(index_symbol)
            if item is not None:
                indices[label] = Quote.model_validate(item)
        if not indices:
            raise UpstreamUnavailableError("Index quotes did not include any known index")
        return MarketOverview(indices=indices)

    async def _fetch_price_history(self, symbol: str) -> Any:
        payload = await self.client.get_historical_price(symbol)
        if not payload:
            raise UpstreamUnavailableError(f"No price history available for {symbol}")
        return payload

    # ------------------------------------------------------------------
    # Quote reads
    # ------------------------------------------------------------------

    async def get_stock_quote_with_status(
        self, symbol: str, force_refresh: bool = False
    ) -> CacheResult[Quote]:
        return await self.stock.get_with_status(
            stock_key(symbol),
            partial(self._fetch_stock_quote, symbol.strip().upper()),
            ttl=self.settings.stock_cache_ttl,
            tags=get_tags("stock", symbol),
            force_refresh=force_refresh,
        )

    async def get_stock_quote(self, symbol: str, force_refresh: bool = False) -> Quote:
        result = await self.get_stock_quote_with_status(symbol, force_refresh=force_refresh)
        return result.value

    async def get_crypto_quote_with_status(
        self, symbol: str, currency: str = "USD", force_refresh: bool = False
    ) -> CacheResult[Quote]:
        return await self.stock.get_with_status(
            crypto_key(symbol, currency),
            partial(self._fetch_crypto_quote, symbol.strip().upper(), currency.strip().upper()),
            ttl=self.settings.crypto_quote_ttl,
            tags=get_tags("crypto", symbol),
            force_refresh=force_refresh,
        )

    async def get_crypto_quote(
        self, symbol: str, currency: str = "USD", force_refresh: bool = False
    ) -> Quote:
        result = await self.get_crypto_quote_with_status(
            symbol, currency, force_refresh=force_refresh
        )
        return result.value

    async def get_market_overview_with_status(
        self, force_refresh: bool = False
    ) -> CacheResult[MarketOverview]:
        return await self.market.get_with_status(
            market_key("overview"),
            self._fetch_market_overview,
            ttl=self.settings.market_cache_ttl,
            tags=get_tags("market"),
            force_refresh=force_refresh,
        )

    async def get_market_overview(self, force_refresh: bool = False) -> MarketOverview:
        result = await self.get_market_overview_with_status(force_refresh=force_refresh)
        return result.value

    async def get_price_history_with_status(
        self, symbol: str, force_refresh: bool = False
    ) -> CacheResult[Any]:
        return await self.general.get_with_status(
            history_key(symbol),
            partial(self._fetch_price_history, symbol.strip().upper()),
            tags=get_tags("history", symbol),
            force_refresh=force_refresh,
        )

    async def get_price_history(self, symbol: str, force_refresh: bool = False) -> Any:
        result = await self.get_price_history_with_status(symbol, force_refresh=force_refresh)
        return result.value

    async def get_multiple_stocks(self, symbols: List[str]) -> List[Quote]:
        """
        Fetch quotes for many symbols in small batches.

        Batches run concurrently inside, sequentially across, with a pause in
        between to stay under upstream rate limits.  Symbols whose fetch
        fails are logged and left out of the result.
        """
        quotes: List[Quote] = []
        batch_size = self.settings.batch_size

        for start in range(0, len(symbols), batch_size):
            batch = symbols[start:start + batch_size]
            results = await asyncio.gather(
                *(self.get_stock_quote(symbol) for symbol in batch),
                return_exceptions=True,
            )
            for symbol, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("Failed to fetch quote for %s: %s", symbol, result)
                else:
                    quotes.append(result)

            if start + batch_size < len(symbols) and self.settings.batch_delay > 0:
                await asyncio.sleep(self.settings.batch_delay)

        return quotes

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get_cache_stats(self) -> Dict[str, CacheStats]:
        return {name: cache.get_stats() for name, cache in self.caches.items()}

    def clear_all_caches(self) -> None:
        for cache in self.caches.values():
            cache.clear()
        logger.info("All market data caches cleared")

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Invalidate *tags* in every cache; return the total removed."""
        tags = list(tags)
        removed = sum(cache.invalidate_by_tags(tags) for cache in self.caches.values())
        logger.info("Cache invalidated by tags %s: %d entries removed", ", ".join(tags), removed)
        return removed

    def invalidate_symbol(self, symbol: str) -> int:
        """Drop every cached entry that concerns *symbol* in any cache."""
        removed = int(self.stock.delete(stock_key(symbol)))
        removed += int(self.stock.delete(crypto_key(symbol)))
        removed += sum(
            cache.invalidate_by_tags([symbol_tag(symbol)]) for cache in self.caches.values()
        )
        logger.info("Cache invalidated for symbol %s: %d entries removed", symbol.upper(), removed)
        return removed

    async def pre_warm_cache(self, symbols: Optional[List[str]] = None) -> int:
        """
        Load quotes for *symbols* (default: configured popular symbols) into
        the stock cache ahead of demand.

        Returns:
            Number of symbols loaded successfully
        """
        symbols = symbols if symbols is not None else self.settings.prewarm_symbols
        logger.info("Pre-warming cache with popular symbols: %s", ", ".join(symbols))

        items = [
            WarmupItem(
                key=stock_key(symbol),
                fetcher=partial(self._fetch_stock_quote, symbol.strip().upper()),
                ttl=self.settings.prewarm_ttl,
                tags=get_tags("stock", symbol),
            )
            for symbol in symbols
        ]
        return await self.stock.warm_up(items)
