"""
Polar Bridge - CoinGecko Price Source

simple/price endpoint, quoted in the pegged currency of the borrowed asset.
Prices are parsed straight into Decimal; no float ever touches them.
"""

import json
import logging
from decimal import Decimal
from typing import Optional

import httpx

from polarbridge.core.errors import PriceUnavailable

logger = logging.getLogger(__name__)


class CoinGeckoPriceSource:
    """Upstream price feed. Raises PriceUnavailable on any failure."""

    def __init__(
        self,
        base_url: str,
        asset_ids: dict[str, str],
        quote_currency: str = "inr",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.asset_ids = asset_ids
        self.quote_currency = quote_currency.lower()
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def fetch(self, asset: str) -> Decimal:
        coin_id = self.asset_ids.get(asset)
        if coin_id is None:
            raise PriceUnavailable(f"No price feed configured for {asset}")

        try:
            response = await self.client.get(
                f"{self.base_url}/simple/price",
                params={"ids": coin_id, "vs_currencies": self.quote_currency},
            )
        except httpx.HTTPError as e:
            logger.warning(f"[ORACLE] CoinGecko request for {asset} failed: {e}")
            raise PriceUnavailable(f"Price source unreachable: {e}")

        if response.status_code != 200:
            raise PriceUnavailable(f"Price source returned HTTP {response.status_code}")

        try:
            data = json.loads(response.text, parse_float=Decimal, parse_int=Decimal)
            price = data[coin_id][self.quote_currency]
        except (ValueError, KeyError, TypeError) as e:
            raise PriceUnavailable(f"Malformed price response for {asset}: {e}")

        if not isinstance(price, Decimal) or price <= 0:
            raise PriceUnavailable(f"Invalid price for {asset}: {price}")
        return price
