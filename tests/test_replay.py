"""Tests for the replay engine and the recorded-sample loader."""

from datetime import datetime, timedelta, timezone

import pytest

from trendpilot.backtest.replay import ReplayEngine, ReplayFeed, load_samples_csv
from trendpilot.config import Config
from trendpilot.errors import FeedUnavailable
from trendpilot.market.models import PricePoint

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _make_config(**overrides) -> Config:
    defaults = {
        "instruments": ("SOL",),
        "update_interval_seconds": 10.0,
        "history_length": 200,
    }
    defaults.update(overrides)
    return Config(**defaults)


def _samples(prices, volumes, step_seconds=10):
    return [
        PricePoint(timestamp=T0 + timedelta(seconds=i * step_seconds), price=p, volume_24h=v)
        for i, (p, v) in enumerate(zip(prices, volumes))
    ]


def _uptrend_then_drop():
    """Gentle uptrend that triggers an entry, then a drop through the stop."""
    prices = [94.0] + [98.0 + 2.0 * (i - 1) / 58 for i in range(1, 60)] + [97.0]
    volumes = [100_000.0 + 30_000.0 * i / 59 for i in range(60)] + [130_000.0]
    return _samples(prices, volumes)


class TestReplayEngine:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        result = await ReplayEngine(_make_config()).run({"SOL": _uptrend_then_drop()})

        assert result["samples_applied"] == 61
        assert len(result["trades"]) == 1
        trade = result["trades"][0]
        assert trade.reason.startswith("stop_loss")
        assert trade.exit_price == 97.0
        assert trade.profit < 0
        assert result["open_positions"] == 0
        assert result["final_capital"] == pytest.approx(20.0 + trade.profit)
        assert result["stats"].total_trades == 1
        assert result["stats"].max_drawdown_pct < 0

    @pytest.mark.asyncio
    async def test_deterministic(self):
        samples = {"SOL": _uptrend_then_drop()}
        first = await ReplayEngine(_make_config()).run(samples)
        second = await ReplayEngine(_make_config()).run(samples)
        assert first["trades"] == second["trades"]
        assert first["final_capital"] == second["final_capital"]

    @pytest.mark.asyncio
    async def test_order_of_input_does_not_matter(self):
        samples = _uptrend_then_drop()
        forward = await ReplayEngine(_make_config()).run({"SOL": samples})
        shuffled = await ReplayEngine(_make_config()).run({"SOL": list(reversed(samples))})
        assert forward["trades"] == shuffled["trades"]

    @pytest.mark.asyncio
    async def test_debounced_samples_skipped(self):
        samples = _samples([100.0 + i for i in range(10)], [1000.0] * 10, step_seconds=5)
        result = await ReplayEngine(_make_config()).run({"SOL": samples})
        assert result["samples_applied"] == 5

    @pytest.mark.asyncio
    async def test_invalid_samples_skipped(self):
        samples = _samples([100.0, -1.0, 101.0], [1000.0, 1000.0, 1000.0])
        result = await ReplayEngine(_make_config()).run({"SOL": samples})
        assert result["samples_applied"] == 2
        assert result["trades"] == []

    @pytest.mark.asyncio
    async def test_multiple_instruments(self):
        result = await ReplayEngine(_make_config()).run({
            "SOL": _uptrend_then_drop(),
            "BTC": _samples([100.0] * 10, [1000.0] * 10),
        })
        assert result["samples_applied"] == 71
        assert [t.instrument_id for t in result["trades"]] == ["SOL"]

    @pytest.mark.asyncio
    async def test_empty(self):
        result = await ReplayEngine(_make_config()).run({})
        assert result["trades"] == []
        assert result["final_capital"] == 20.0


class TestReplayFeed:
    @pytest.mark.asyncio
    async def test_serves_latest_sample(self):
        feed = ReplayFeed()
        with pytest.raises(FeedUnavailable):
            await feed.get_price("SOL")
        feed.push("SOL", PricePoint(T0, 10.0, 500.0))
        assert await feed.get_price("SOL") == 10.0
        assert await feed.get_volume_24h("SOL") == 500.0


class TestLoadSamplesCsv:
    def test_loads_rows(self, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text(
            "instrument_id,timestamp,price,volume_24h\n"
            "SOL,2024-01-01T00:00:00Z,100.5,1000\n"
            "SOL,2024-01-01T00:01:00,101.0,1100\n"
            "BTC,1704067200,42000,5e9\n"
            "BTC,1704067260000,42100,5.1e9\n",
            encoding="utf-8",
        )
        samples = load_samples_csv(str(path))

        assert set(samples) == {"SOL", "BTC"}
        assert samples["SOL"][0] == PricePoint(T0, 100.5, 1000.0)
        assert samples["SOL"][1].timestamp == T0 + timedelta(minutes=1)
        assert samples["BTC"][0].timestamp == T0
        assert samples["BTC"][1].timestamp == T0 + timedelta(minutes=1)

    def test_missing_column(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("instrument_id,timestamp,price\nSOL,1,2\n", encoding="utf-8")
        with pytest.raises(ValueError, match="volume_24h"):
            load_samples_csv(str(path))

    def test_bad_row_names_line(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text(
            "instrument_id,timestamp,price,volume_24h\n"
            "SOL,2024-01-01T00:00:00Z,100,1000\n"
            "SOL,2024-01-01T00:01:00Z,abc,1000\n",
            encoding="utf-8",
        )
        with pytest.raises(ValueError, match=":3:"):
            load_samples_csv(str(path))
