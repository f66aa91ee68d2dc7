"""
Cache administration routes.

Endpoints:
  GET    /api/cache/stats             : Stats, config and in-flight keys per cache
  POST   /api/cache/clear             : Clear every cache
  POST   /api/cache/invalidate        : Invalidate entries carrying any of the given tags
  DELETE /api/cache/symbol/{symbol}   : Drop everything cached for one symbol
  POST   /api/cache/sweep             : Remove expired entries now
  POST   /api/cache/prewarm           : Load popular symbols into the stock cache
"""

from typing import Any, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from market_cache.market_data import MarketDataService

router = APIRouter()


class InvalidateRequest(BaseModel):
    tags: List[str] = Field(..., min_length=1)


class PrewarmRequest(BaseModel):
    symbols: Optional[List[str]] = None


def _service(request: Request) -> MarketDataService:
    return request.app.state.market_data


@router.get("/stats", summary="Cache statistics")
async def get_stats(request: Request) -> dict[str, Any]:
    return {name: cache.describe() for name, cache in _service(request).caches.items()}


@router.post("/clear", summary="Clear all caches")
async def clear_caches(request: Request) -> dict[str, str]:
    _service(request).clear_all_caches()
    return {"status": "cleared"}


@router.post("/invalidate", summary="Invalidate by tags")
async def invalidate_tags(request: Request, body: InvalidateRequest) -> dict[str, int]:
    removed = _service(request).invalidate_by_tags(body.tags)
    return {"removed": removed}


@router.delete("/symbol/{symbol}", summary="Invalidate one symbol")
async def invalidate_symbol(request: Request, symbol: str) -> dict[str, Any]:
    removed = _service(request).invalidate_symbol(symbol)
    return {"symbol": symbol.upper(), "removed": removed}


@router.post("/sweep", summary="Sweep expired entries")
async def sweep(request: Request) -> dict[str, int]:
    return {name: cache.sweep_expired() for name, cache in _service(request).caches.items()}


@router.post("/prewarm", summary="Pre-warm the stock cache")
async def prewarm(request: Request, body: Optional[PrewarmRequest] = None) -> dict[str, int]:
    symbols = body.symbols if body is not None else None
    service = _service(request)
    requested = len(symbols) if symbols is not None else len(service.settings.prewarm_symbols)
    loaded = await service.pre_warm_cache(symbols)
    return {"requested": requested, "loaded": loaded}
