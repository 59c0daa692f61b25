"""Aggregated feed that asks several venues at once and keeps whoever answers.

Each source is a regular ``FeedProvider``.  Instrument ids are translated per
source through a symbol map (``SOL`` may be ``SOLUSDT`` on Binance and
``solana`` on CoinGecko); an instrument without a mapping uses its own id.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from trendpilot.errors import FeedUnavailable
from trendpilot.feeds.base import FeedProvider, PollingFeed
from trendpilot.feeds.coingecko import CoinGeckoFeed
from trendpilot.feeds.jupiter import JupiterFeed

logger = logging.getLogger("trendpilot.feeds")

SymbolMap = dict[str, dict[str, str]]


@dataclass(frozen=True)
class SourcedPrice:
    """One venue's answer to a price lookup."""

    source: str
    price: float
    change_24h_pct: Optional[float]
    fetched_at: datetime

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "price": self.price,
            "change_24h_pct": self.change_24h_pct,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass(frozen=True)
class MarketData:
    """Consolidated view of an instrument across venues.

    ``market_cap`` is ``None`` without a CoinGecko source and ``liquid`` is
    ``None`` without a Jupiter source.
    """

    instrument_id: str
    price: SourcedPrice
    prices: tuple[SourcedPrice, ...]
    market_cap: Optional[float]
    volume_24h: Optional[float]
    liquid: Optional[bool]

    def to_dict(self) -> dict:
        return {
            "instrument_id": self.instrument_id,
            "price": self.price.to_dict(),
            "prices": [p.to_dict() for p in self.prices],
            "market_cap": self.market_cap,
            "volume_24h": self.volume_24h,
            "liquid": self.liquid,
        }


class AggregatedFeed(PollingFeed):
    """Queries every configured source and drops the ones that fail.

    Args:
        sources: Source name → feed, in order of preference.
        symbol_map: Instrument id → {source name → venue symbol}.
        poll_interval: Seconds between polls for subscribed instruments.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        sources: dict[str, FeedProvider],
        symbol_map: Optional[SymbolMap] = None,
        poll_interval: float = 2.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not sources:
            raise ValueError("AggregatedFeed needs at least one source")
        super().__init__(poll_interval=poll_interval)
        self._sources = dict(sources)
        self._symbol_map = {k: dict(v) for k, v in (symbol_map or {}).items()}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def source_names(self) -> list[str]:
        return list(self._sources.keys())

    def symbol_for(self, source: str, instrument_id: str) -> str:
        return self._symbol_map.get(instrument_id, {}).get(source, instrument_id)

    # ── Lookups ──────────────────────────────────────────────────────────

    async def get_aggregated_price(self, instrument_id: str) -> list[SourcedPrice]:
        """Ask every source concurrently; failing sources are logged and left out.

        The result keeps the configured source order.
        """
        names = list(self._sources)
        answers = await asyncio.gather(
            *(self._sourced_price(name, instrument_id) for name in names),
            return_exceptions=True,
        )
        prices: list[SourcedPrice] = []
        for name, answer in zip(names, answers):
            if isinstance(answer, BaseException):
                logger.warning("%s price for %s failed: %s", name, instrument_id, answer)
                continue
            prices.append(answer)
        return prices

    async def _sourced_price(self, name: str, instrument_id: str) -> SourcedPrice:
        source = self._sources[name]
        symbol = self.symbol_for(name, instrument_id)
        price = await source.get_price(symbol)
        change: Optional[float] = None
        if isinstance(source, CoinGeckoFeed):
            try:
                change = await source.get_change_24h(symbol)
            except FeedUnavailable as exc:
                logger.debug("CoinGecko 24h change for %s unavailable: %s", symbol, exc)
        return SourcedPrice(
            source=name, price=price, change_24h_pct=change, fetched_at=self._clock(),
        )

    async def get_price(self, instrument_id: str) -> float:
        """Price from the first source that answers."""
        prices = await self.get_aggregated_price(instrument_id)
        if not prices:
            raise FeedUnavailable(f"No source returned a price for {instrument_id}")
        return prices[0].price

    async def get_volume_24h(self, instrument_id: str) -> float:
        """Volume from the first source, in order, that answers."""
        for name, source in self._sources.items():
            try:
                return await source.get_volume_24h(self.symbol_for(name, instrument_id))
            except Exception as exc:
                logger.warning("%s volume for %s failed: %s", name, instrument_id, exc)
        raise FeedUnavailable(f"No source returned a volume for {instrument_id}")

    async def get_market_data(self, instrument_id: str) -> MarketData:
        """Aggregated price plus market cap, volume and a liquidity check.

        Raises ``FeedUnavailable`` only when no source returns a price.
        """
        prices = await self.get_aggregated_price(instrument_id)
        if not prices:
            raise FeedUnavailable(f"No source returned a price for {instrument_id}")

        market_cap: Optional[float] = None
        volume: Optional[float] = None
        liquid: Optional[bool] = None
        for name, source in self._sources.items():
            symbol = self.symbol_for(name, instrument_id)
            if isinstance(source, CoinGeckoFeed) and market_cap is None:
                try:
                    market = await source.get_market_data(symbol)
                except FeedUnavailable as exc:
                    logger.warning("CoinGecko market data for %s failed: %s", symbol, exc)
                else:
                    market_cap = market["market_cap"]
                    volume = market["total_volume"]
            elif isinstance(source, JupiterFeed) and liquid is None:
                liquid = await source.check_liquidity(symbol)

        if volume is None:
            try:
                volume = await self.get_volume_24h(instrument_id)
            except FeedUnavailable as exc:
                logger.warning("No volume for %s: %s", instrument_id, exc)

        return MarketData(
            instrument_id=instrument_id,
            price=prices[0],
            prices=tuple(prices),
            market_cap=market_cap,
            volume_24h=volume,
            liquid=liquid,
        )

    async def close(self) -> None:
        await super().close()
        for source in self._sources.values():
            await source.close()
