"""CoinGecko feed — instrument ids are CoinGecko coin ids (e.g. ``solana``)."""

import math
from typing import Any, Optional

from trendpilot.errors import FeedUnavailable
from trendpilot.feeds.base import PollingFeed, parse_positive
from trendpilot.feeds.http import RateLimitedFetcher

SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
COINS_URL = "https://api.coingecko.com/api/v3/coins"

# CoinGecko's public tier refreshes roughly every 30 seconds
_CACHE_TTL_SECONDS = 30.0


class CoinGeckoFeed(PollingFeed):
    """Polls ``/simple/price`` for USD price and 24h volume.

    Price and volume come from the same response, which the fetcher caches,
    so one poll costs a single upstream request.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        poll_interval: float = 30.0,
        price_url: str = SIMPLE_PRICE_URL,
        coins_url: str = COINS_URL,
    ) -> None:
        super().__init__(poll_interval=poll_interval)
        self._fetcher = fetcher
        self._price_url = price_url
        self._coins_url = coins_url

    async def _quote(self, instrument_id: str) -> dict[str, Any]:
        data = await self._fetcher.get_json(
            self._price_url,
            params={
                "ids": instrument_id,
                "vs_currencies": "usd",
                "include_24hr_vol": "true",
                "include_24hr_change": "true",
            },
            cache_ttl=_CACHE_TTL_SECONDS,
        )
        quote = data.get(instrument_id) if isinstance(data, dict) else None
        if not isinstance(quote, dict):
            raise FeedUnavailable(f"CoinGecko returned no quote for {instrument_id}")
        return quote

    async def get_price(self, instrument_id: str) -> float:
        quote = await self._quote(instrument_id)
        price = parse_positive(quote.get("usd"))
        if price is None:
            raise FeedUnavailable(f"CoinGecko returned invalid price {quote.get('usd')!r}")
        return price

    async def get_volume_24h(self, instrument_id: str) -> float:
        quote = await self._quote(instrument_id)
        volume = parse_positive(quote.get("usd_24h_vol"))
        if volume is None:
            raise FeedUnavailable(
                f"CoinGecko returned invalid volume {quote.get('usd_24h_vol')!r}"
            )
        return volume

    async def get_change_24h(self, instrument_id: str) -> float:
        """24h price change in percent; 0.0 when CoinGecko omits it."""
        quote = await self._quote(instrument_id)
        change = quote.get("usd_24h_change")
        if not isinstance(change, (int, float)) or not math.isfinite(change):
            return 0.0
        return float(change)

    async def get_market_data(self, instrument_id: str) -> dict[str, Optional[float]]:
        """Market cap and volume from ``/coins/{id}``.

        Returns ``current_price``, ``price_change_24h_pct``, ``market_cap`` and
        ``total_volume`` (USD).  Fields CoinGecko leaves empty are ``None``.
        """
        data = await self._fetcher.get_json(
            f"{self._coins_url}/{instrument_id}",
            params={
                "localization": "false",
                "tickers": "false",
                "community_data": "false",
                "developer_data": "false",
            },
            cache_ttl=_CACHE_TTL_SECONDS,
        )
        market = data.get("market_data") if isinstance(data, dict) else None
        if not isinstance(market, dict):
            raise FeedUnavailable(f"CoinGecko returned no market data for {instrument_id}")

        def _usd(field: str) -> Optional[float]:
            value = market.get(field)
            return parse_positive(value.get("usd")) if isinstance(value, dict) else None

        change = market.get("price_change_percentage_24h")
        return {
            "current_price": _usd("current_price"),
            "price_change_24h_pct": float(change) if isinstance(change, (int, float)) else None,
            "market_cap": _usd("market_cap"),
            "total_volume": _usd("total_volume"),
        }
