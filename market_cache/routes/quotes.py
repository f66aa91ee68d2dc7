"""
Quote routes for the market dashboard.

Endpoints:
  GET  /api/quotes/stock/{symbol}         : Stock quote (stock cache, FMP on miss)
  POST /api/quotes/stock/{symbol}/mapped  : Stock quote reshaped by field mappings
  GET  /api/quotes/crypto/{symbol}        : Crypto pair quote (stock cache)
  GET  /api/quotes/market/overview        : Headline indices (market cache)
  GET  /api/quotes/history/{symbol}       : EOD price history (general cache)
  POST /api/quotes/batch                  : Several stock quotes, rate-limited batches

Every read accepts ``?refresh=true`` to bypass the cache read.  Responses carry
``source`` and ``cached`` so widgets can flag cached data.  A 503 is returned
when the upstream provider cannot supply data; failures are never cached, so
the next request retries upstream.
"""

import logging
from typing import Any, List

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from market_cache.coordinator import CacheResult
from market_cache.market_data import MarketDataService, UpstreamUnavailableError
from market_cache.transforms import FieldMapping, apply_mappings, check_target_conflicts

logger = logging.getLogger(__name__)

router = APIRouter()


class BatchRequest(BaseModel):
    symbols: List[str] = Field(..., min_length=1, max_length=50)


def _service(request: Request) -> MarketDataService:
    return request.app.state.market_data


def _unavailable(what: str, exc: Exception) -> HTTPException:
    logger.error("%s unavailable: %s", what, exc)
    return HTTPException(
        status_code=503,
        detail=f"{what} temporarily unavailable. Please retry shortly.",
    )


def _envelope(result: CacheResult) -> dict[str, Any]:
    value = result.value
    data = value.model_dump(mode="json") if isinstance(value, BaseModel) else value
    return {"source": result.source.value, "cached": result.cached, "data": data}


# ---------------------------------------------------------------------------
# GET /stock/{symbol}
# ---------------------------------------------------------------------------

@router.get("/stock/{symbol}", summary="Current stock quote")
async def get_stock_quote(
    request: Request,
    symbol: str,
    refresh: bool = Query(default=False, description="Bypass the cache read"),
) -> dict:
    """
    Return the current quote for *symbol*.

    Raises:
        HTTPException(503): When the quote is not cached and FMP returns no data.
    """
    try:
        result = await _service(request).get_stock_quote_with_status(symbol, force_refresh=refresh)
    except UpstreamUnavailableError as exc:
        raise _unavailable(f"Quote for {symbol.upper()}", exc) from exc
    return _envelope(result)


@router.post("/stock/{symbol}/mapped", summary="Stock quote reshaped by field mappings")
async def get_mapped_stock_quote(
    request: Request,
    symbol: str,
    mappings: List[FieldMapping],
) -> dict:
    """
    Apply widget field *mappings* to the (cached) quote for *symbol*.

    Raises:
        HTTPException(422): When one target field is a parent of another.
        HTTPException(503): When the quote is not cached and FMP returns no data.
    """
    try:
        check_target_conflicts(mappings)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        result = await _service(request).get_stock_quote_with_status(symbol)
    except UpstreamUnavailableError as exc:
        raise _unavailable(f"Quote for {symbol.upper()}", exc) from exc

    payload = result.value.model_dump(mode="json")
    return {
        "source": result.source.value,
        "cached": result.cached,
        "data": apply_mappings(payload, mappings),
    }


# ---------------------------------------------------------------------------
# GET /crypto/{symbol}
# ---------------------------------------------------------------------------

@router.get("/crypto/{symbol}", summary="Crypto pair quote")
async def get_crypto_quote(
    request: Request,
    symbol: str,
    currency: str = Query(default="USD", min_length=3, max_length=4),
    refresh: bool = Query(default=False),
) -> dict:
    try:
        result = await _service(request).get_crypto_quote_with_status(
            symbol, currency, force_refresh=refresh
        )
    except UpstreamUnavailableError as exc:
        raise _unavailable(f"Crypto quote for {symbol.upper()}/{currency.upper()}", exc) from exc
    return _envelope(result)


# ---------------------------------------------------------------------------
# GET /market/overview
# ---------------------------------------------------------------------------

@router.get("/market/overview", summary="Headline index overview")
async def get_market_overview(
    request: Request,
    refresh: bool = Query(default=False),
) -> dict:
    try:
        result = await _service(request).get_market_overview_with_status(force_refresh=refresh)
    except UpstreamUnavailableError as exc:
        raise _unavailable("Market overview", exc) from exc
    return _envelope(result)


# ---------------------------------------------------------------------------
# GET /history/{symbol}
# ---------------------------------------------------------------------------

@router.get("/history/{symbol}", summary="Historical OHLCV data")
async def get_price_history(
    request: Request,
    symbol: str,
    refresh: bool = Query(default=False),
) -> dict:
    try:
        result = await _service(request).get_price_history_with_status(
            symbol, force_refresh=refresh
        )
    except UpstreamUnavailableError as exc:
        raise _unavailable(f"Price history for {symbol.upper()}", exc) from exc
    return _envelope(result)


# ---------------------------------------------------------------------------
# POST /batch
# ---------------------------------------------------------------------------

@router.post("/batch", summary="Quotes for several symbols")
async def get_batch_quotes(request: Request, body: BatchRequest) -> dict:
    """Return quotes for every symbol that could be fetched; failures are omitted."""
    quotes = await _service(request).get_multiple_stocks(body.symbols)
    return {
        "requested": len(body.symbols),
        "returned": len(quotes),
        "data": [quote.model_dump(mode="json") for quote in quotes],
    }
