from __future__ import annotations

import logging
import time
from typing import Dict, List

from bityield.config import Settings
from bityield.http import HttpClient

logger = logging.getLogger(__name__)

PRICE_CACHE_SECONDS = 60.0


async def get_prices_usd(http: HttpClient, base_url: str, coin_ids: List[str]) -> Dict[str, float]:
    """Fetch USD prices for given Coingecko coin ids."""
    if not coin_ids:
        return {}
    url = f"{base_url}/simple/price"
    params = {"ids": ",".join(coin_ids), "vs_currencies": "usd"}
    resp = await http.get_with_retry(url, params=params)
    data = resp.json()
    out: Dict[str, float] = {}
    for cid, obj in data.items():
        usd = obj.get("usd")
        if isinstance(usd, (int, float)):
            out[cid] = float(usd)
    return out


async def get_binance_price(http: HttpClient, base_url: str, symbol: str = "BTCUSDT") -> float:
    resp = await http.get_with_retry(f"{base_url}/ticker/price", params={"symbol": symbol})
    return float(resp.json()["price"])


class PriceOracle:
    """BTC/USD with a short in-process cache and a chain of sources."""

    def __init__(self, http: HttpClient, settings: Settings):
        self.http = http
        self.settings = settings
        self._price: float | None = None
        self._fetched_at: float = 0.0
        self.last_was_estimate = False

    async def get_bitcoin_price(self) -> float:
        if self._price and time.monotonic() - self._fetched_at < PRICE_CACHE_SECONDS:
            return self._price

        try:
            prices = await get_prices_usd(self.http, self.settings.COINGECKO_BASE_URL, ["bitcoin"])
            if prices.get("bitcoin", 0.0) > 0:
                return self._remember(prices["bitcoin"])
            logger.warning("CoinGecko returned no BTC price, trying Binance")
        except Exception as e:
            logger.warning(f"CoinGecko price fetch failed, trying Binance: {e}")

        try:
            price = await get_binance_price(self.http, self.settings.BINANCE_BASE_URL)
            if price > 0:
                return self._remember(price)
        except Exception as e:
            logger.error(f"All price sources failed: {e}")

        if self._price:
            logger.warning(f"Using stale cached BTC price {self._price}")
            self.last_was_estimate = False
            return self._price

        logger.error("No BTC price available, using configured fallback estimate")
        self.last_was_estimate = True
        return self.settings.BTC_PRICE_FALLBACK_USD

    def _remember(self, price: float) -> float:
        self._price = float(price)
        self._fetched_at = time.monotonic()
        self.last_was_estimate = False
        return self._price
