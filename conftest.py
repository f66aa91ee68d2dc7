"""
Root conftest for the market cache test suite.

Sets required environment variables BEFORE any market_cache module is imported,
so that ``market_cache.config.Settings`` can instantiate without raising a
``ValidationError`` for the missing ``FMP_API_KEY``.
"""

import os

# Must be set before any import of market_cache.config triggers Settings()
os.environ.setdefault("FMP_API_KEY", "test-key-not-real")
