"""
Cache key and tag conventions for market data.

Keys follow ``"<domain>:<SYMBOL>[:<qualifier>]"`` so that entries are easy to
read in admin displays.  Keys are normalized (lower-cased) by the store, so the
upper-casing here only matters for log output.  Tags are what bulk
invalidation matches on: every entry carries its domain tag and, when it
concerns a single instrument, a ``symbol:<SYMBOL>`` tag.
"""

from typing import List, Literal, Optional

Domain = Literal["stock", "crypto", "market", "history"]


def stock_key(symbol: str, source: Optional[str] = None) -> str:
    """``stock:AAPL`` or ``stock:AAPL:<source>``."""
    key = f"stock:{symbol.strip().upper()}"
    return f"{key}:{source}" if source else key


def crypto_key(symbol: str, currency: str = "USD") -> str:
    return f"crypto:{symbol.strip().upper()}:{currency.strip().upper()}"


def market_key(kind: str, region: Optional[str] = None) -> str:
    """``market:overview`` or ``market:<kind>:<region>``."""
    return f"market:{kind}:{region}" if region else f"market:{kind}"


def history_key(symbol: str) -> str:
    return f"history:{symbol.strip().upper()}"


def symbol_tag(symbol: str) -> str:
    return f"symbol:{symbol.strip().upper()}"


def get_tags(domain: Domain, symbol: Optional[str] = None) -> List[str]:
    """Tags for an entry: the domain, plus ``symbol:<SYMBOL>`` when given."""
    tags: List[str] = [domain]
    if symbol:
        tags.append(symbol_tag(symbol))
    return tags
