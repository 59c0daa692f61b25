"""Replay engine — runs recorded samples through the live pipeline.

Samples from every instrument are merged chronologically and fed to a fresh
history store, strategy and paper bridge.  The store clock follows the replayed
timestamps, so a replay is deterministic: the same samples always produce the
same trades.  No real orders are placed.
"""

import csv
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Optional

from trendpilot.analysis.scoring import ScoreModel
from trendpilot.analysis.trend import TrendAnalyzer
from trendpilot.config import Config
from trendpilot.engine import TradingEngine
from trendpilot.errors import FeedUnavailable, InvalidSample
from trendpilot.execution.bridge import PaperExecutionBridge
from trendpilot.feeds.base import ErrorCallback, SampleCallback
from trendpilot.market.history_store import InstrumentHistoryStore
from trendpilot.market.models import PricePoint
from trendpilot.strategy.engine import StrategyEngine

logger = logging.getLogger("trendpilot")

_CSV_COLUMNS = ("instrument_id", "timestamp", "price", "volume_24h")


class ReplayFeed:
    """Feed that answers lookups from the most recently replayed sample."""

    def __init__(self) -> None:
        self._latest: dict[str, PricePoint] = {}

    def push(self, instrument_id: str, sample: PricePoint) -> None:
        self._latest[instrument_id] = sample

    def _sample(self, instrument_id: str) -> PricePoint:
        sample = self._latest.get(instrument_id)
        if sample is None:
            raise FeedUnavailable(f"No replayed sample for {instrument_id}")
        return sample

    async def get_price(self, instrument_id: str) -> float:
        return self._sample(instrument_id).price

    async def get_volume_24h(self, instrument_id: str) -> float:
        return self._sample(instrument_id).volume_24h

    def subscribe(
        self,
        instrument_id: str,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        pass

    def unsubscribe(self, instrument_id: str) -> None:
        pass

    async def close(self) -> None:
        pass


class ReplayEngine:
    """Replays recorded samples through store, strategy and paper fills.

    Args:
        config: Application configuration.  Push feeds and retry delays are
                disabled for the replay.
        score_model: Optional score model for the analyzer.
    """

    def __init__(self, config: Config, score_model: Optional[ScoreModel] = None) -> None:
        self._config = dataclasses.replace(
            config, feed_push=False, feed_retry_delay_seconds=0.0,
        )
        self._score_model = score_model

    # ── Public API ───────────────────────────────────────────────────────

    async def run(self, samples_by_instrument: dict[str, list[PricePoint]]) -> dict:
        """Execute a full replay.

        Args:
            samples_by_instrument: Samples per instrument, in any order.

        Returns:
            Dict with ``trades`` (list of ``ClosedTrade``), ``stats``
            (``TradeStats``), ``final_capital``, ``samples_applied`` and
            ``open_positions`` (still open when the samples ran out).
        """
        events = sorted(
            (
                (sample.timestamp, instrument_id, sample)
                for instrument_id, samples in samples_by_instrument.items()
                for sample in samples
            ),
            key=lambda e: (e[0], e[1]),
        )

        now: list[datetime] = [datetime.fromtimestamp(0, tz=timezone.utc)]

        def clock() -> datetime:
            return now[0]

        feed = ReplayFeed()
        store = InstrumentHistoryStore(
            self._config, feed, clock=clock, schedule_polling=False,
        )
        analyzer = TrendAnalyzer.from_config(self._config)
        if self._score_model is not None:
            analyzer.score_model = self._score_model
        strategy = StrategyEngine(self._config, store, analyzer, feed, clock=clock)
        bridge = PaperExecutionBridge()
        engines: dict[str, TradingEngine] = {}
        applied = 0

        for timestamp, instrument_id, sample in events:
            now[0] = timestamp
            feed.push(instrument_id, sample)

            if not store.is_tracking(instrument_id):
                try:
                    await store.start_tracking(instrument_id)
                except InvalidSample as exc:
                    logger.warning("Skipping replay sample for %s: %s", instrument_id, exc)
                    continue
                engines[instrument_id] = TradingEngine(
                    instrument_id, strategy, bridge, mode="replay",
                )
                applied += 1
            else:
                try:
                    if not store.ingest(instrument_id, sample):
                        continue
                except InvalidSample as exc:
                    logger.warning("Skipping replay sample for %s: %s", instrument_id, exc)
                    continue
                applied += 1

            await engines[instrument_id].run_once()

        await store.shutdown()
        trades = list(strategy.ledger.closed_trades)
        stats = strategy.stats()
        logger.info(
            "Replay complete: %d samples applied, %d trades, profit %.4f, win rate %.1f%%",
            applied, stats.total_trades, stats.total_profit, stats.win_rate,
        )
        return {
            "trades": trades,
            "stats": stats,
            "final_capital": strategy.account.current_capital,
            "samples_applied": applied,
            "open_positions": len(strategy.open_positions()),
        }


def _parse_timestamp(raw: str) -> datetime:
    raw = raw.strip()
    try:
        value = float(raw)
    except ValueError:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    # Epoch milliseconds when large, seconds otherwise
    if value > 1e11:
        value /= 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


def load_samples_csv(path: str) -> dict[str, list[PricePoint]]:
    """Read ``instrument_id,timestamp,price,volume_24h`` rows.

    Timestamps may be ISO-8601 (naive means UTC) or epoch seconds /
    milliseconds.

    Raises:
        ValueError: Missing columns or an unparseable row (with its line).
    """
    samples: dict[str, list[PricePoint]] = {}
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        missing = [c for c in _CSV_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"{path}: missing column(s): {', '.join(missing)}")
        for line_no, row in enumerate(reader, start=2):
            try:
                sample = PricePoint(
                    timestamp=_parse_timestamp(row["timestamp"]),
                    price=float(row["price"]),
                    volume_24h=float(row["volume_24h"]),
                )
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{path}:{line_no}: {exc}") from exc
            samples.setdefault(row["instrument_id"].strip(), []).append(sample)
    return samples
