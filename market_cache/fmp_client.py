"""
FMP (Financial Modeling Prep) quote client.

The upstream collaborator behind the market-data caches.  All HTTP calls to
FMP route through this module; nothing else in the project talks to the
provider directly.

Every public method returns the parsed JSON payload on success or ``None`` on
any failure (network error, 4xx/5xx, exhausted retries after 429, or an
unparseable body).  Turning ``None`` into an exception is the caller's job,
so that failures are never stored by the cache.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from market_cache.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Retry configuration constants
_MAX_RETRIES: int = 3
_BACKOFF_BASE: float = 1.0  # seconds, doubles each retry: 1s, 2s, 4s
_REQUEST_TIMEOUT: float = 30.0  # seconds

# Index symbols shown in the market overview widget
MARKET_INDICES: Dict[str, str] = {
    "SPX": "^GSPC",
    "NASDAQ": "^IXIC",
    "DOW": "^DJI",
}


class FMPClient:
    """
    Async HTTP client for the FMP quote endpoints.

    Usage::

        client = FMPClient()
        quote = await client.get_quote("AAPL")
        await client.close()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialise the underlying ``httpx.AsyncClient`` with a fixed timeout.

        Args:
            settings: Application settings (defaults to :func:`get_settings`)
            transport: Optional httpx transport, used by tests to stub FMP
        """
        settings = settings or get_settings()
        self._api_key: str = settings.fmp_api_key
        self._base_url: str = settings.fmp_base_url
        self._client: httpx.AsyncClient = httpx.AsyncClient(
            timeout=httpx.Timeout(_REQUEST_TIMEOUT),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client and release any held connections."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get(self, path: str, **params: Any) -> Optional[Any]:
        """
        GET ``{base_url}/{path}`` and return the decoded JSON body.

        HTTP 429 is retried up to ``_MAX_RETRIES`` times with exponential
        backoff.  Any other failure is logged and reported as ``None``.  The
        API key is sent as a query parameter and never logged.
        """
        url = f"{self._base_url}/{path}"
        label = f"{path} {params}"

        for attempt in range(_MAX_RETRIES + 1):
            try:
                response = await self._client.get(url, params={**params, "apikey": self._api_key})
            except httpx.HTTPError as exc:
                logger.error("FMP request failed for %s: %s", label, exc)
                return None

            if response.status_code != 429:
                break
            if attempt == _MAX_RETRIES:
                logger.error("FMP rate limit persisted for %s after %d retries", label, attempt)
                return None

            delay = _BACKOFF_BASE * 2 ** attempt
            logger.warning("FMP rate-limited on %s; retry %d in %.1fs", label, attempt + 1, delay)
            await asyncio.sleep(delay)

        if response.is_error:
            logger.error(
                "FMP returned HTTP %d for %s: %s",
                response.status_code,
                label,
                response.text[:200] or "<empty body>",
            )
            return None

        try:
            return response.json()
        except ValueError as exc:
            logger.error("FMP sent an unreadable body for %s: %s", label, exc)
            return None

    # ------------------------------------------------------------------
    # Public API methods
    # ------------------------------------------------------------------

    async def get_quote(self, symbol: str) -> Optional[List[Dict[str, Any]]]:
        """
        Fetch real-time quote data for a symbol.

        Endpoint: ``GET /stable/quote?symbol={symbol}``

        Args:
            symbol: Stock, index or crypto pair symbol, e.g. ``"AAPL"``.

        Returns:
            List of quote objects, or ``None`` on failure.
        """
        return await self._get("quote", symbol=symbol)

    async def get_quotes(self, symbols: List[str]) -> Optional[List[Dict[str, Any]]]:
        """
        Fetch quotes for several symbols in parallel.

        Each symbol is fetched individually via :meth:`get_quote` because the
        stable API does not accept comma-separated batches.

        Returns:
            Flat list of quote objects (one per successful symbol), or
            ``None`` if every individual request failed.
        """
        if not symbols:
            return []

        results = await asyncio.gather(*(self.get_quote(s) for s in symbols))

        quotes: List[Dict[str, Any]] = []
        for result in results:
            if result:
                quotes.append(result[0])

        logger.debug("get_quotes: fetched %d/%d symbols successfully", len(quotes), len(symbols))
        return quotes if quotes else None

    async def get_crypto_quote(
        self,
        symbol: str,
        currency: str = "USD",
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Fetch a crypto pair quote, e.g. ``BTC`` in ``USD`` as ``BTCUSD``.
        """
        return await self.get_quote(f"{symbol.upper()}{currency.upper()}")

    async def get_index_quotes(self) -> Optional[List[Dict[str, Any]]]:
        """Fetch quotes for every index in :data:`MARKET_INDICES`."""
        return await self.get_quotes(list(MARKET_INDICES.values()))

    async def get_historical_price(self, symbol: str) -> Optional[Any]:
        """
        Fetch end-of-day OHLCV history for charting.

        Endpoint: ``GET /stable/historical-price-eod/full?symbol={symbol}``
        """
        return await self._get("historical-price-eod/full", symbol=symbol)
