"""Tests for the feed adapters and the shared rate-limited fetcher.

HTTP is mocked by monkeypatching ``httpx.AsyncClient.get``; the Binance
stream is mocked by monkeypatching ``websockets.connect``.
"""

import asyncio
import json
import time

import httpx
import pytest
import websockets

from trendpilot.config import Config
from trendpilot.errors import FeedUnavailable, RateLimited
from trendpilot.feeds.aggregate import AggregatedFeed
from trendpilot.feeds.base import FeedProvider, PollingFeed, parse_positive
from trendpilot.feeds.binance import BinanceFeed
from trendpilot.feeds.coingecko import CoinGeckoFeed
from trendpilot.feeds.http import RateLimitedFetcher
from trendpilot.feeds.jupiter import SOL_MINT, USDC_MINT, JupiterFeed
from trendpilot.feeds.registry import FEED_REGISTRY, build_feed, build_fetcher, get_feed


def _fast_fetcher(**overrides) -> RateLimitedFetcher:
    defaults = {"min_interval": 0.0, "backoff_base": 0.0, "cache_ttl": 5.0}
    defaults.update(overrides)
    return RateLimitedFetcher(**defaults)


def _install_responses(monkeypatch, responses):
    """Serve *responses* in order; each is ``(status, json_body, headers)``
    or an exception instance.  Returns the list of requested URLs."""
    queue = list(responses)
    calls: list[dict] = []

    async def _mock_get(self, url, *, headers=None, params=None, timeout=None):
        calls.append({"url": url, "params": params})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, body, resp_headers = item
        return httpx.Response(
            status,
            json=body,
            headers=resp_headers or {},
            request=httpx.Request("GET", url),
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    return calls


def _install_routes(monkeypatch, routes):
    """Serve the JSON body whose key the requested URL ends with; unknown
    URLs get a 404.  Returns the list of requests."""
    calls: list[dict] = []

    async def _mock_get(self, url, *, headers=None, params=None, timeout=None):
        calls.append({"url": url, "params": params})
        for suffix, body in routes.items():
            if url.endswith(suffix):
                return httpx.Response(200, json=body, request=httpx.Request("GET", url))
        return httpx.Response(404, json={}, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    return calls


# ── Fetcher ──────────────────────────────────────────────────────────────


class TestRateLimitedFetcher:
    @pytest.mark.asyncio
    async def test_returns_json(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(200, {"ok": True}, None)])
        fetcher = _fast_fetcher()
        assert await fetcher.get_json("https://x.test/a", params={"b": "1"}) == {"ok": True}
        assert calls[0]["params"] == {"b": "1"}

    @pytest.mark.asyncio
    async def test_caches_by_url_and_params(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(200, {"n": 1}, None)])
        fetcher = _fast_fetcher()
        await fetcher.get_json("https://x.test/a", params={"ids": "a", "x": "1"})
        await fetcher.get_json("https://x.test/a", params={"x": "1", "ids": "a"})
        assert len(calls) == 1
        await fetcher.get_json("https://x.test/a", params={"ids": "b"})
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(200, {"n": 1}, None)])
        fetcher = _fast_fetcher(cache_ttl=0)
        await fetcher.get_json("https://x.test/a")
        await fetcher.get_json("https://x.test/a")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(200, {"n": 1}, None)])
        fetcher = _fast_fetcher()
        await fetcher.get_json("https://x.test/a")
        fetcher.clear_cache()
        await fetcher.get_json("https://x.test/a")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retries_rate_limit(self, monkeypatch):
        calls = _install_responses(
            monkeypatch,
            [(429, {}, {"Retry-After": "0"}), (200, {"ok": True}, None)],
        )
        fetcher = _fast_fetcher()
        assert await fetcher.get_json("https://x.test/a") == {"ok": True}
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_rate_limit(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(429, {}, None)])
        fetcher = _fast_fetcher(max_retries=3)
        with pytest.raises(RateLimited):
            await fetcher.get_json("https://x.test/a")
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, monkeypatch):
        calls = _install_responses(
            monkeypatch, [(503, {}, None), (502, {}, None), (200, {"ok": 1}, None)],
        )
        fetcher = _fast_fetcher()
        assert await fetcher.get_json("https://x.test/a") == {"ok": 1}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_persistent_server_error(self, monkeypatch):
        _install_responses(monkeypatch, [(504, {}, None)])
        with pytest.raises(FeedUnavailable) as exc_info:
            await _fast_fetcher().get_json("https://x.test/a")
        assert not isinstance(exc_info.value, RateLimited)

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(404, {}, None)])
        with pytest.raises(FeedUnavailable, match="404"):
            await _fast_fetcher().get_json("https://x.test/a")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error(self, monkeypatch):
        calls = _install_responses(monkeypatch, [httpx.ConnectError("refused")])
        with pytest.raises(FeedUnavailable, match="Transport error"):
            await _fast_fetcher(max_retries=2).get_json("https://x.test/a")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_min_interval_between_requests(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {}, None)])
        fetcher = _fast_fetcher(min_interval=0.05, cache_ttl=0)
        start = time.monotonic()
        await fetcher.get_json("https://x.test/a")
        await fetcher.get_json("https://x.test/b")
        assert time.monotonic() - start >= 0.045
        assert fetcher.request_count == 2

    def test_backoff_delay(self):
        fetcher = RateLimitedFetcher(backoff_base=1.0, backoff_cap=10.0)
        assert 1.0 <= fetcher.backoff_delay(0) <= 2.0
        assert 4.0 <= fetcher.backoff_delay(2) <= 5.0
        assert fetcher.backoff_delay(6) == 10.0
        assert fetcher.backoff_delay(0, retry_after=7.0) == 7.0
        assert fetcher.backoff_delay(0, retry_after=60.0) == 10.0


# ── Adapters ─────────────────────────────────────────────────────────────


class TestJupiterFeed:
    @pytest.mark.asyncio
    async def test_price(self, monkeypatch):
        calls = _install_responses(
            monkeypatch, [(200, {"data": {SOL_MINT: {"price": "142.5"}}}, None)],
        )
        feed = JupiterFeed(_fast_fetcher())
        assert await feed.get_price(SOL_MINT) == 142.5
        assert calls[0]["params"] == {"ids": SOL_MINT}

    @pytest.mark.asyncio
    async def test_volume_estimate(self, monkeypatch):
        _install_responses(
            monkeypatch,
            [(200, {"data": {SOL_MINT: {"price": 2.0}, USDC_MINT: {"price": 1.0},
                             "other": {"price": 3.0}}}, None)],
        )
        feed = JupiterFeed(_fast_fetcher(cache_ttl=0))
        assert await feed.get_volume_24h(SOL_MINT) == 2.0 * 1_000_000 * 1000
        assert await feed.get_volume_24h(USDC_MINT) == 1.0 * 1_000_000 * 800
        assert await feed.get_volume_24h("other") == 3.0 * 1_000_000 * 10

    @pytest.mark.asyncio
    async def test_missing_price(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"data": {}}, None)])
        with pytest.raises(FeedUnavailable):
            await JupiterFeed(_fast_fetcher()).get_price(SOL_MINT)

    @pytest.mark.asyncio
    async def test_invalid_price(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"data": {SOL_MINT: {"price": "0"}}}, None)])
        with pytest.raises(FeedUnavailable):
            await JupiterFeed(_fast_fetcher()).get_price(SOL_MINT)

    @pytest.mark.asyncio
    async def test_liquid_when_impact_small(self, monkeypatch):
        calls = _install_responses(monkeypatch, [(200, {"priceImpactPct": "0.2"}, None)])
        assert await JupiterFeed(_fast_fetcher()).check_liquidity(SOL_MINT) is True
        assert calls[0]["url"].endswith("/v6/quote")
        assert calls[0]["params"]["inputMint"] == SOL_MINT
        assert calls[0]["params"]["outputMint"] == USDC_MINT
        assert calls[0]["params"]["amount"] == "1000000"
        assert calls[0]["params"]["slippageBps"] == 50

    @pytest.mark.asyncio
    async def test_illiquid_when_impact_large(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"priceImpactPct": "2.5"}, None)])
        assert await JupiterFeed(_fast_fetcher()).check_liquidity(SOL_MINT) is False

    @pytest.mark.parametrize("status, body", [(404, {}), (200, {"routePlan": []})])
    @pytest.mark.asyncio
    async def test_failed_quote_counts_as_illiquid(self, monkeypatch, status, body):
        _install_responses(monkeypatch, [(status, body, None)])
        assert await JupiterFeed(_fast_fetcher()).check_liquidity(SOL_MINT) is False


class TestCoinGeckoFeed:
    @pytest.mark.asyncio
    async def test_price_and_volume_share_a_request(self, monkeypatch):
        calls = _install_responses(
            monkeypatch,
            [(200, {"solana": {"usd": 150.25, "usd_24h_vol": 2.5e9, "usd_24h_change": 1.2}}, None)],
        )
        feed = CoinGeckoFeed(_fast_fetcher())
        assert await feed.get_price("solana") == 150.25
        assert await feed.get_volume_24h("solana") == 2.5e9
        assert len(calls) == 1
        assert calls[0]["params"]["vs_currencies"] == "usd"
        assert calls[0]["params"]["include_24hr_vol"] == "true"

    @pytest.mark.asyncio
    async def test_unknown_coin(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {}, None)])
        with pytest.raises(FeedUnavailable):
            await CoinGeckoFeed(_fast_fetcher()).get_price("nope")

    @pytest.mark.asyncio
    async def test_missing_volume(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"solana": {"usd": 150.0}}, None)])
        with pytest.raises(FeedUnavailable):
            await CoinGeckoFeed(_fast_fetcher()).get_volume_24h("solana")

    @pytest.mark.asyncio
    async def test_change_24h(self, monkeypatch):
        _install_responses(
            monkeypatch,
            [(200, {"solana": {"usd": 150.0, "usd_24h_vol": 1.0, "usd_24h_change": -2.75}}, None)],
        )
        assert await CoinGeckoFeed(_fast_fetcher()).get_change_24h("solana") == -2.75

    @pytest.mark.asyncio
    async def test_change_24h_missing(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"solana": {"usd": 150.0}}, None)])
        assert await CoinGeckoFeed(_fast_fetcher()).get_change_24h("solana") == 0.0

    @pytest.mark.asyncio
    async def test_market_data(self, monkeypatch):
        calls = _install_responses(
            monkeypatch,
            [(200, {"id": "solana", "market_data": {
                "current_price": {"usd": 150.0},
                "market_cap": {"usd": 7.0e10},
                "total_volume": {"usd": 2.1e9},
                "price_change_percentage_24h": 3.5,
            }}, None)],
        )
        market = await CoinGeckoFeed(_fast_fetcher()).get_market_data("solana")
        assert calls[0]["url"].endswith("/coins/solana")
        assert calls[0]["params"]["tickers"] == "false"
        assert market == {
            "current_price": 150.0,
            "price_change_24h_pct": 3.5,
            "market_cap": 7.0e10,
            "total_volume": 2.1e9,
        }

    @pytest.mark.asyncio
    async def test_market_data_partial(self, monkeypatch):
        _install_responses(
            monkeypatch,
            [(200, {"market_data": {"current_price": {"usd": 150.0}, "market_cap": {}}}, None)],
        )
        market = await CoinGeckoFeed(_fast_fetcher()).get_market_data("solana")
        assert market["current_price"] == 150.0
        assert market["market_cap"] is None
        assert market["total_volume"] is None
        assert market["price_change_24h_pct"] is None

    @pytest.mark.asyncio
    async def test_market_data_missing(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"id": "solana"}, None)])
        with pytest.raises(FeedUnavailable, match="market data"):
            await CoinGeckoFeed(_fast_fetcher()).get_market_data("solana")


class _FakeConnection:
    def __init__(self, messages):
        self._messages = messages

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message


class TestBinanceFeed:
    @pytest.mark.asyncio
    async def test_rest_ticker(self, monkeypatch):
        calls = _install_responses(
            monkeypatch,
            [(200, {"symbol": "SOLUSDT", "lastPrice": "142.10", "quoteVolume": "98765432.1"}, None)],
        )
        feed = BinanceFeed(_fast_fetcher())
        assert await feed.get_price("solusdt") == 142.10
        assert await feed.get_volume_24h("solusdt") == 98765432.1
        assert calls[0]["params"] == {"symbol": "SOLUSDT"}

    @pytest.mark.asyncio
    async def test_invalid_ticker(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"lastPrice": "abc"}, None)])
        with pytest.raises(FeedUnavailable):
            await BinanceFeed(_fast_fetcher()).get_price("SOLUSDT")

    def test_parse_trade(self):
        feed = BinanceFeed(_fast_fetcher())
        raw = json.dumps({"e": "trade", "s": "SOLUSDT", "p": "142.5", "T": 1_700_000_000_000})
        sample = feed.parse_trade("SOLUSDT", raw)
        assert sample.price == 142.5
        assert sample.volume_24h == 0.0
        assert sample.timestamp.timestamp() == 1_700_000_000

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            json.dumps({"e": "aggTrade", "p": "1.0"}),
            json.dumps({"e": "trade", "p": "-1"}),
            json.dumps([1, 2, 3]),
        ],
    )
    def test_parse_trade_rejects(self, raw):
        assert BinanceFeed(_fast_fetcher()).parse_trade("SOLUSDT", raw) is None

    @pytest.mark.asyncio
    async def test_trade_uses_last_rest_volume(self, monkeypatch):
        _install_responses(monkeypatch, [(200, {"lastPrice": "1", "quoteVolume": "5000"}, None)])
        feed = BinanceFeed(_fast_fetcher())
        await feed.get_volume_24h("SOLUSDT")
        sample = feed.parse_trade("SOLUSDT", json.dumps({"e": "trade", "p": "2", "T": 1}))
        assert sample.volume_24h == 5000.0

    @pytest.mark.asyncio
    async def test_stream_pushes_samples(self, monkeypatch):
        messages = [
            json.dumps({"e": "trade", "p": "10.0", "T": 1_000}),
            json.dumps({"e": "kline"}),
            json.dumps({"e": "trade", "p": "10.5", "T": 2_000}),
        ]
        urls: list[str] = []

        def _connect(url, **kwargs):
            urls.append(url)
            return _FakeConnection(messages)

        monkeypatch.setattr(websockets, "connect", _connect)
        feed = BinanceFeed(_fast_fetcher(), ws_url="wss://x.test/ws", max_reconnect_attempts=0)
        received = []
        feed.subscribe("SOLUSDT", lambda iid, sample: received.append((iid, sample.price)))
        await asyncio.wait_for(feed._subscriptions["SOLUSDT"], timeout=2)

        assert urls == ["wss://x.test/ws/solusdt@trade"]
        assert received == [("SOLUSDT", 10.0), ("SOLUSDT", 10.5)]
        assert feed.subscribed == []

    @pytest.mark.asyncio
    async def test_stream_reconnects(self, monkeypatch):
        attempts: list[str] = []

        def _connect(url, **kwargs):
            attempts.append(url)
            raise OSError("connection refused")

        monkeypatch.setattr(websockets, "connect", _connect)
        feed = BinanceFeed(
            _fast_fetcher(), max_reconnect_attempts=2, reconnect_base=0.0,
        )
        feed.subscribe("SOLUSDT", lambda iid, sample: None)
        await asyncio.wait_for(feed._subscriptions["SOLUSDT"], timeout=5)
        assert len(attempts) == 3
        assert feed.reconnect_count == 3

    @pytest.mark.asyncio
    async def test_stream_drops_reach_error_handler(self, monkeypatch):
        def _connect(url, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(websockets, "connect", _connect)
        feed = BinanceFeed(_fast_fetcher(), max_reconnect_attempts=1, reconnect_base=0.0)
        errors = []
        feed.subscribe(
            "SOLUSDT",
            lambda iid, sample: None,
            lambda iid, exc: errors.append((iid, type(exc))),
        )
        await asyncio.wait_for(feed._subscriptions["SOLUSDT"], timeout=5)
        assert errors == [("SOLUSDT", OSError), ("SOLUSDT", OSError)]

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels(self, monkeypatch):
        class _Forever(_FakeConnection):
            async def _iterate(self):
                await asyncio.Event().wait()
                yield ""  # pragma: no cover

        monkeypatch.setattr(websockets, "connect", lambda url, **kw: _Forever([]))
        feed = BinanceFeed(_fast_fetcher())
        feed.subscribe("SOLUSDT", lambda iid, sample: None)
        task = feed._subscriptions["SOLUSDT"]
        await asyncio.sleep(0)
        await feed.close()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert feed.subscribed == []


# ── Polling subscriptions ────────────────────────────────────────────────


class _StaticFeed(PollingFeed):
    def __init__(self):
        super().__init__(poll_interval=0.01)

    async def get_price(self, instrument_id):
        return 5.0

    async def get_volume_24h(self, instrument_id):
        return 50.0


class TestPollingFeed:
    @pytest.mark.asyncio
    async def test_subscribe_polls(self):
        feed = _StaticFeed()
        received = []
        feed.subscribe("X", lambda iid, sample: received.append(sample))
        feed.subscribe("X", lambda iid, sample: received.append(sample))
        await asyncio.sleep(0.05)
        feed.unsubscribe("X")
        assert received
        assert received[0].price == 5.0
        assert received[0].volume_24h == 50.0
        assert feed.subscribed == []

    @pytest.mark.asyncio
    async def test_close(self):
        feed = _StaticFeed()
        feed.subscribe("X", lambda iid, sample: None)
        feed.subscribe("Y", lambda iid, sample: None)
        await feed.close()
        assert feed.subscribed == []
        feed.unsubscribe("never")

    def test_requires_price_and_volume(self):
        with pytest.raises(TypeError):
            PollingFeed()  # type: ignore[abstract]

        class _PriceOnly(PollingFeed):
            async def get_price(self, instrument_id):
                return 1.0

        with pytest.raises(TypeError):
            _PriceOnly()  # type: ignore[abstract]

    @pytest.mark.asyncio
    async def test_poll_failures_reach_error_handler(self):
        class _Broken(_StaticFeed):
            async def get_price(self, instrument_id):
                raise FeedUnavailable("down")

        feed = _Broken()
        received, errors = [], []
        feed.subscribe(
            "X",
            lambda iid, sample: received.append(sample),
            lambda iid, exc: errors.append((iid, str(exc))),
        )
        await asyncio.sleep(0.05)
        await feed.close()
        assert received == []
        assert errors
        assert errors[0] == ("X", "down")

    @pytest.mark.asyncio
    async def test_failing_error_handler_keeps_polling(self):
        class _Broken(_StaticFeed):
            async def get_price(self, instrument_id):
                raise FeedUnavailable("down")

        calls = []

        def _handler(iid, exc):
            calls.append(iid)
            raise RuntimeError("handler broke")

        feed = _Broken()
        feed.subscribe("X", lambda iid, sample: None, _handler)
        await asyncio.sleep(0.05)
        assert feed.subscribed == ["X"]
        await feed.close()
        assert len(calls) >= 2


def test_parse_positive():
    assert parse_positive("1.5") == 1.5
    assert parse_positive(2) == 2.0
    assert parse_positive(None) is None
    assert parse_positive("abc") is None
    assert parse_positive(0) is None
    assert parse_positive(float("nan")) is None


# ── Registry ─────────────────────────────────────────────────────────────


class TestRegistry:
    @pytest.mark.parametrize("name", sorted(FEED_REGISTRY))
    def test_get_feed(self, name):
        feed = get_feed(name, _fast_fetcher())
        assert isinstance(feed, FEED_REGISTRY[name])
        assert isinstance(feed, FeedProvider)

    def test_unknown_provider(self):
        with pytest.raises(KeyError, match="Available"):
            get_feed("nope", _fast_fetcher())

    def test_build_fetcher(self):
        fetcher = build_fetcher(Config(min_request_interval_seconds=0.5, cache_ttl_seconds=0))
        assert isinstance(fetcher, RateLimitedFetcher)

    def test_build_feed_single_provider(self):
        feed = build_feed(Config(feed_provider="coingecko"), _fast_fetcher())
        assert isinstance(feed, CoinGeckoFeed)

    def test_build_feed_aggregate(self):
        config = Config(
            feed_provider="aggregate",
            feed_sources=("binance", "jupiter"),
            feed_symbols=(("SOL", "binance", "SOLUSDT"), ("SOL", "jupiter", SOL_MINT)),
        )
        feed = build_feed(config, _fast_fetcher())
        assert isinstance(feed, AggregatedFeed)
        assert isinstance(feed, FeedProvider)
        assert feed.source_names == ["binance", "jupiter"]
        assert feed.symbol_for("binance", "SOL") == "SOLUSDT"
        assert feed.symbol_for("jupiter", "SOL") == SOL_MINT
        assert feed.symbol_for("binance", "ETH") == "ETH"

    def test_build_feed_unknown_source(self):
        config = Config(feed_provider="aggregate", feed_sources=("binance", "nope"))
        with pytest.raises(KeyError, match="Available"):
            build_feed(config, _fast_fetcher())


# ── Aggregated feed ──────────────────────────────────────────────────────


class _StubSource:
    """Duck-typed source answering with fixed values or raising."""

    def __init__(self, price=None, volume=None):
        self.price = price
        self.volume = volume
        self.requested: list[str] = []
        self.closed = False

    async def get_price(self, instrument_id):
        self.requested.append(instrument_id)
        if self.price is None:
            raise FeedUnavailable(f"no price for {instrument_id}")
        return self.price

    async def get_volume_24h(self, instrument_id):
        if self.volume is None:
            raise FeedUnavailable(f"no volume for {instrument_id}")
        return self.volume

    def subscribe(self, instrument_id, on_sample, on_error=None):
        pass

    def unsubscribe(self, instrument_id):
        pass

    async def close(self):
        self.closed = True


_SOL_ROUTES = {
    "/simple/price": {"solana": {"usd": 150.0, "usd_24h_vol": 2.0e9, "usd_24h_change": 3.5}},
    "/coins/solana": {"market_data": {
        "current_price": {"usd": 150.0},
        "market_cap": {"usd": 7.0e10},
        "total_volume": {"usd": 2.1e9},
    }},
    "/v6/price": {"data": {SOL_MINT: {"price": "149.8"}}},
    "/v6/quote": {"priceImpactPct": "0.2"},
}


class TestAggregatedFeed:
    def test_needs_a_source(self):
        with pytest.raises(ValueError):
            AggregatedFeed({})

    @pytest.mark.asyncio
    async def test_keeps_order_and_drops_failures(self):
        feed = AggregatedFeed({
            "a": _StubSource(price=10.0),
            "b": _StubSource(),
            "c": _StubSource(price=10.5),
        })
        prices = await feed.get_aggregated_price("SOL")
        assert [(p.source, p.price) for p in prices] == [("a", 10.0), ("c", 10.5)]
        assert all(p.change_24h_pct is None for p in prices)
        assert prices[0].to_dict()["source"] == "a"

    @pytest.mark.asyncio
    async def test_price_falls_through_to_next_source(self):
        feed = AggregatedFeed({"a": _StubSource(), "b": _StubSource(price=7.0, volume=70.0)})
        assert await feed.get_price("SOL") == 7.0
        assert await feed.get_volume_24h("SOL") == 70.0

    @pytest.mark.asyncio
    async def test_all_sources_failing(self):
        feed = AggregatedFeed({"a": _StubSource(), "b": _StubSource()})
        assert await feed.get_aggregated_price("SOL") == []
        with pytest.raises(FeedUnavailable, match="No source returned a price"):
            await feed.get_price("SOL")
        with pytest.raises(FeedUnavailable, match="No source returned a volume"):
            await feed.get_volume_24h("SOL")
        with pytest.raises(FeedUnavailable):
            await feed.get_market_data("SOL")

    @pytest.mark.asyncio
    async def test_symbol_map(self):
        binance = _StubSource(price=1.0)
        gecko = _StubSource(price=1.0)
        feed = AggregatedFeed(
            {"binance": binance, "coingecko": gecko},
            symbol_map={"SOL": {"binance": "SOLUSDT"}},
        )
        await feed.get_aggregated_price("SOL")
        assert binance.requested == ["SOLUSDT"]
        assert gecko.requested == ["SOL"]

    @pytest.mark.asyncio
    async def test_market_data_across_venues(self, monkeypatch):
        calls = _install_routes(monkeypatch, _SOL_ROUTES)
        fetcher = _fast_fetcher()
        feed = AggregatedFeed(
            {"coingecko": CoinGeckoFeed(fetcher), "jupiter": JupiterFeed(fetcher)},
            symbol_map={"SOL": {"coingecko": "solana", "jupiter": SOL_MINT}},
        )
        market = await feed.get_market_data("SOL")

        assert market.instrument_id == "SOL"
        assert market.price.source == "coingecko"
        assert market.price.price == 150.0
        assert market.price.change_24h_pct == 3.5
        assert [(p.source, p.price) for p in market.prices] == [
            ("coingecko", 150.0), ("jupiter", 149.8),
        ]
        assert market.prices[1].change_24h_pct is None
        assert market.market_cap == 7.0e10
        assert market.volume_24h == 2.1e9
        assert market.liquid is True
        assert any(c["url"].endswith("/v6/quote") for c in calls)

        body = market.to_dict()
        assert body["price"]["source"] == "coingecko"
        assert len(body["prices"]) == 2

    @pytest.mark.asyncio
    async def test_market_data_survives_failing_source(self, monkeypatch):
        routes = dict(_SOL_ROUTES)
        del routes["/v6/price"]
        del routes["/v6/quote"]
        _install_routes(monkeypatch, routes)
        fetcher = _fast_fetcher()
        feed = AggregatedFeed(
            {"jupiter": JupiterFeed(fetcher), "coingecko": CoinGeckoFeed(fetcher)},
            symbol_map={"SOL": {"coingecko": "solana", "jupiter": SOL_MINT}},
        )
        market = await feed.get_market_data("SOL")
        assert [p.source for p in market.prices] == ["coingecko"]
        assert market.liquid is False
        assert market.market_cap == 7.0e10

    @pytest.mark.asyncio
    async def test_market_data_without_coingecko_or_jupiter(self):
        feed = AggregatedFeed({"a": _StubSource(price=3.0, volume=300.0)})
        market = await feed.get_market_data("SOL")
        assert market.price.price == 3.0
        assert market.market_cap is None
        assert market.liquid is None
        assert market.volume_24h == 300.0

    @pytest.mark.asyncio
    async def test_polls_first_answer(self):
        feed = AggregatedFeed(
            {"a": _StubSource(), "b": _StubSource(price=4.0, volume=40.0)},
            poll_interval=0.01,
        )
        received = []
        feed.subscribe("SOL", lambda iid, sample: received.append(sample))
        await asyncio.sleep(0.05)
        await feed.close()
        assert received
        assert received[0].price == 4.0
        assert received[0].volume_24h == 40.0

    @pytest.mark.asyncio
    async def test_close_closes_sources(self):
        a, b = _StubSource(), _StubSource()
        feed = AggregatedFeed({"a": a, "b": b})
        feed.subscribe("SOL", lambda iid, sample: None)
        await feed.close()
        assert a.closed and b.closed
        assert feed.subscribed == []
