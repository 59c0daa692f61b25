"""Binance feed — public trade stream over WebSocket plus the 24h REST ticker.

Instrument ids are Binance symbols (``SOLUSDT``).  Trade messages carry only
a price, so pushed samples reuse the last 24h quote volume fetched over REST.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

from trendpilot.errors import FeedUnavailable
from trendpilot.feeds.base import ErrorCallback, SampleCallback, parse_positive, report_error
from trendpilot.feeds.http import RateLimitedFetcher
from trendpilot.market.models import PricePoint

logger = logging.getLogger("trendpilot.feeds")

WS_URL = "wss://stream.binance.com:9443/ws"
TICKER_URL = "https://api.binance.com/api/v3/ticker/24hr"

# ── Reconnection tuning ─────────────────────────────────────
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BASE_S = 1.0
JITTER_MAX_S = 0.5

WS_PING_INTERVAL_S = 20
WS_PING_TIMEOUT_S = 20


class BinanceFeed:
    """Push feed over ``<symbol>@trade`` streams with REST lookups."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        ws_url: str = WS_URL,
        ticker_url: str = TICKER_URL,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_base: float = RECONNECT_BASE_S,
    ) -> None:
        self._fetcher = fetcher
        self._ws_url = ws_url
        self._ticker_url = ticker_url
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_base = reconnect_base
        self._subscriptions: dict[str, asyncio.Task] = {}
        self._last_volume: dict[str, float] = {}
        self.reconnect_count: int = 0

    # ── REST lookups ─────────────────────────────────────────────────────

    async def _ticker(self, instrument_id: str) -> dict:
        data = await self._fetcher.get_json(
            self._ticker_url, params={"symbol": instrument_id.upper()},
        )
        if not isinstance(data, dict):
            raise FeedUnavailable(f"Binance returned no ticker for {instrument_id}")
        return data

    async def get_price(self, instrument_id: str) -> float:
        ticker = await self._ticker(instrument_id)
        price = parse_positive(ticker.get("lastPrice"))
        if price is None:
            raise FeedUnavailable(
                f"Binance returned invalid price {ticker.get('lastPrice')!r}"
            )
        return price

    async def get_volume_24h(self, instrument_id: str) -> float:
        ticker = await self._ticker(instrument_id)
        volume = parse_positive(ticker.get("quoteVolume"))
        if volume is None:
            raise FeedUnavailable(
                f"Binance returned invalid volume {ticker.get('quoteVolume')!r}"
            )
        self._last_volume[instrument_id] = volume
        return volume

    # ── Streaming ────────────────────────────────────────────────────────

    def subscribe(
        self,
        instrument_id: str,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if instrument_id in self._subscriptions:
            return
        self._subscriptions[instrument_id] = asyncio.create_task(
            self._stream(instrument_id, on_sample, on_error),
            name=f"binance-ws-{instrument_id}",
        )

    def unsubscribe(self, instrument_id: str) -> None:
        task = self._subscriptions.pop(instrument_id, None)
        if task is not None:
            task.cancel()

    @property
    def subscribed(self) -> list[str]:
        return list(self._subscriptions.keys())

    def _reconnect_delay(self, attempt: int) -> float:
        return self._reconnect_base * (2 ** (attempt - 1)) + random.uniform(0, JITTER_MAX_S)

    async def _stream(
        self,
        instrument_id: str,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        url = f"{self._ws_url}/{instrument_id.lower()}@trade"
        attempts = 0

        while True:
            try:
                async with websockets.connect(
                    url,
                    ping_interval=WS_PING_INTERVAL_S,
                    ping_timeout=WS_PING_TIMEOUT_S,
                ) as ws:
                    logger.info("Binance stream connected for %s", instrument_id)
                    attempts = 0
                    async for raw in ws:
                        sample = self.parse_trade(instrument_id, raw)
                        if sample is not None:
                            on_sample(instrument_id, sample)
            except asyncio.CancelledError:
                raise
            except (ConnectionClosed, OSError) as exc:
                logger.warning("Binance stream for %s dropped: %s", instrument_id, exc)
                if on_error is not None:
                    report_error(on_error, instrument_id, exc)
            except Exception as exc:
                logger.exception("Binance stream for %s failed", instrument_id)
                if on_error is not None:
                    report_error(on_error, instrument_id, exc)

            attempts += 1
            self.reconnect_count += 1
            if attempts > self._max_reconnect_attempts:
                logger.error(
                    "Binance stream for %s gave up after %d reconnect attempts",
                    instrument_id, self._max_reconnect_attempts,
                )
                self._subscriptions.pop(instrument_id, None)
                return
            delay = self._reconnect_delay(attempts)
            logger.warning(
                "Reconnecting Binance stream for %s in %.1fs (attempt %d/%d)",
                instrument_id, delay, attempts, self._max_reconnect_attempts,
            )
            await asyncio.sleep(delay)

    def parse_trade(self, instrument_id: str, raw: str | bytes) -> Optional[PricePoint]:
        """Turn a trade message into a sample, or ``None`` if not usable."""
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable Binance message for %s", instrument_id)
            return None
        if not isinstance(msg, dict) or msg.get("e") != "trade":
            return None
        price = parse_positive(msg.get("p"))
        if price is None:
            return None
        trade_ms = msg.get("T")
        if isinstance(trade_ms, (int, float)):
            timestamp = datetime.fromtimestamp(trade_ms / 1000.0, tz=timezone.utc)
        else:
            timestamp = datetime.now(timezone.utc)
        return PricePoint(
            timestamp=timestamp,
            price=price,
            volume_24h=self._last_volume.get(instrument_id, 0.0),
        )

    async def close(self) -> None:
        for instrument_id in list(self._subscriptions):
            self.unsubscribe(instrument_id)
