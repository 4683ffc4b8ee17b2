"""
Polar Bridge - Price Oracle Adapter

One current price per asset with staleness metadata.

Cache policy:
    - fresh entry (age < ttl)      -> served from cache
    - expired entry, upstream ok   -> refreshed
    - expired entry, upstream down -> last value served, marked stale
    - no entry, upstream down      -> PriceUnavailable
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Protocol

from polarbridge.core.errors import PriceUnavailable
from polarbridge.models.schemas import PriceQuote, utc_now

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    async def fetch(self, asset: str) -> Decimal: ...


class StaticPriceSource:
    """Fixed prices for development and tests. `set_price(asset, None)` simulates an outage."""

    def __init__(self, prices: Optional[dict[str, Decimal]] = None):
        self._prices: dict[str, Optional[Decimal]] = dict(prices or {})
        self.calls = 0

    def set_price(self, asset: str, price: Optional[Decimal]) -> None:
        self._prices[asset] = price

    async def fetch(self, asset: str) -> Decimal:
        self.calls += 1
        price = self._prices.get(asset)
        if price is None:
            raise PriceUnavailable(f"No static price for {asset}")
        return price


class PriceOracle:
    """TTL cache in front of a PriceSource. The cache belongs to this instance only."""

    def __init__(
        self,
        source: PriceSource,
        ttl_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.source = source
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._cache: dict[str, tuple[Decimal, datetime]] = {}

    def invalidate(self, asset: Optional[str] = None) -> None:
        if asset is None:
            self._cache.clear()
        else:
            self._cache.pop(asset, None)

    async def get_price(self, asset: str) -> PriceQuote:
        now = self.clock()
        cached = self._cache.get(asset)
        if cached and now - cached[1] < self.ttl:
            return PriceQuote(asset=asset, price=cached[0], as_of=cached[1])

        try:
            price = await self.source.fetch(asset)
        except PriceUnavailable as e:
            if cached is None:
                logger.error(f"[ORACLE] No price for {asset}: {e}")
                raise
            logger.warning(
                f"[ORACLE] Serving stale {asset} price {cached[0]} from "
                f"{cached[1].isoformat()}: {e}"
            )
            return PriceQuote(asset=asset, price=cached[0], as_of=cached[1], stale=True)

        self._cache[asset] = (price, now)
        logger.debug(f"[ORACLE] {asset} = {price}")
        return PriceQuote(asset=asset, price=price, as_of=now)
