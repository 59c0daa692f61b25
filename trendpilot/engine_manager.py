"""EngineManager — owns the pipeline and one TradingEngine per instrument.

Builds the history store, analyzer, strategy, bridge and journal from the
configuration.  Instruments run as concurrent ``asyncio`` tasks and can be
started / stopped individually or en masse.
"""

import asyncio
import logging
from typing import Callable, Optional

from trendpilot.analysis.trend import TrendAnalyzer
from trendpilot.config import Config
from trendpilot.errors import DegradedFeed, FeedUnavailable, InvalidSample
from trendpilot.execution.bridge import ExecutionBridge, PaperExecutionBridge
from trendpilot.engine import TradingEngine
from trendpilot.feeds.base import FeedProvider
from trendpilot.ledger.performance import PerformanceLedger
from trendpilot.market.alerts import AlertCondition, PriceAlertBook
from trendpilot.market.history_store import InstrumentHistoryStore
from trendpilot.repos.trade_repo import TradeRepo
from trendpilot.strategy.engine import StrategyEngine

logger = logging.getLogger("trendpilot.engine_manager")

_SIGNAL_LOG_LIMIT = 50


class EngineManager:
    """Lifecycle manager: ``create → run → shutdown``.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        feed: Shared ``FeedProvider``.
        bridge: Execution bridge; a ``PaperExecutionBridge`` if omitted.
        trade_repo: Optional journal for entries and exits.
        mode: Label for the journal and status (``"paper"``).
    """

    def __init__(
        self,
        config: Config,
        feed: FeedProvider,
        bridge: Optional[ExecutionBridge] = None,
        trade_repo: Optional[TradeRepo] = None,
        mode: str = "paper",
    ) -> None:
        self._config = config
        self._feed = feed
        self._mode = mode
        self._trade_repo = trade_repo
        self.alerts = PriceAlertBook()
        self.store = InstrumentHistoryStore(config, feed, alerts=self.alerts)
        self.analyzer = TrendAnalyzer.from_config(config)
        self.ledger = PerformanceLedger(config.initial_capital)
        self.strategy = StrategyEngine(
            config, self.store, self.analyzer, feed, ledger=self.ledger,
        )
        self.bridge = bridge or PaperExecutionBridge()
        self._engines: dict[str, TradingEngine] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._signal_log: list[dict] = []
        self.degraded_events: list[DegradedFeed] = []
        self.store.add_degraded_listener(self._on_degraded)

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def config(self) -> Config:
        return self._config

    @property
    def feed(self) -> FeedProvider:
        return self._feed

    @property
    def trade_repo(self) -> Optional[TradeRepo]:
        return self._trade_repo

    @property
    def engines(self) -> dict[str, TradingEngine]:
        """Map of instrument id → ``TradingEngine``."""
        return dict(self._engines)

    @property
    def instrument_ids(self) -> list[str]:
        return list(self._engines.keys())

    @property
    def signal_log(self) -> list[dict]:
        """Recent cycle outcomes, oldest first (max 50)."""
        return list(self._signal_log)

    async def start_instrument(self, instrument_id: str) -> TradingEngine:
        """Start tracking *instrument_id* and register its engine.

        Feed errors from the initial fetch propagate.
        """
        await self.store.start_tracking(instrument_id)
        engine = self._engines.get(instrument_id)
        if engine is None:
            engine = TradingEngine(
                instrument_id=instrument_id,
                strategy=self.strategy,
                bridge=self.bridge,
                trade_repo=self._trade_repo,
                mode=self._mode,
                on_event=self.log_signal,
            )
            self._engines[instrument_id] = engine
            logger.info("Registered engine for %s", instrument_id)
        return engine

    def stop_instrument(self, instrument_id: str) -> None:
        """Stop one instrument's engine, tracking and pending alerts.

        Unknown id is a no-op.
        """
        engine = self._engines.pop(instrument_id, None)
        if engine is not None:
            engine.stop()
            logger.info("Stop signal sent to %s.", instrument_id)
        self.store.stop_tracking(instrument_id)
        cleared = self.alerts.clear_alerts(instrument_id)
        if cleared:
            logger.info("Dropped %d pending alert(s) for %s.", cleared, instrument_id)

    async def run_all(
        self,
        poll_interval: Optional[float] = None,
        max_cycles: int = 0,
    ) -> dict[str, list[dict]]:
        """Start every configured instrument and run the engines concurrently.

        Instruments whose initial fetch fails are logged and skipped.

        Returns:
            ``{instrument_id: [cycle_results]}`` for every started instrument.
        """
        if poll_interval is None:
            poll_interval = self._config.update_interval_seconds

        for instrument_id in self._config.instruments:
            if instrument_id in self._engines:
                continue
            try:
                await self.start_instrument(instrument_id)
            except (FeedUnavailable, InvalidSample, ValueError) as exc:
                logger.error("Could not start %s: %s", instrument_id, exc)

        async def _run_engine(instrument_id: str, engine: TradingEngine):
            logger.info("Starting engine for %s.", instrument_id)
            return await engine.run(poll_interval=poll_interval, max_cycles=max_cycles)

        self._tasks = {
            instrument_id: asyncio.create_task(_run_engine(instrument_id, engine))
            for instrument_id, engine in self._engines.items()
        }

        results: dict[str, list[dict]] = {}
        for instrument_id, task in self._tasks.items():
            try:
                results[instrument_id] = await task
            except asyncio.CancelledError:
                results[instrument_id] = []
            except Exception as exc:  # pragma: no cover
                logger.error("Engine for %s crashed: %s", instrument_id, exc)
                results[instrument_id] = [{"action": "error", "reason": str(exc)}]
        return results

    def stop_all(self) -> None:
        """Signal every engine to stop gracefully."""
        for instrument_id, engine in self._engines.items():
            engine.stop()
            logger.info("Stop signal sent to %s.", instrument_id)

    async def shutdown(self) -> None:
        """Stop engines, wait for their loops, stop tracking and close the feed."""
        self.stop_all()
        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.store.shutdown()
        await self._feed.close()
        logger.info("Engine manager shut down.")

    # ── Alerts / events ──────────────────────────────────────────────────

    def create_price_alert(
        self,
        instrument_id: str,
        condition: AlertCondition,
        price: float,
        callback: Optional[Callable[[float], None]] = None,
    ) -> str:
        """Register a one-shot price alert; fired alerts land in the signal log."""

        def _fired(current_price: float) -> None:
            logger.info(
                "Price alert: %s %s %.6f (now %.6f)",
                instrument_id, condition, price, current_price,
            )
            self.log_signal({
                "instrument_id": instrument_id,
                "signal_type": None,
                "price": current_price,
                "status": "alert",
                "reason": f"Price {condition} {price}",
                "evaluated_at": self.store.now().isoformat(),
            })
            if callback is not None:
                callback(current_price)

        return self.alerts.create_alert(instrument_id, condition, price, _fired)

    def log_signal(self, entry: dict) -> None:
        self._signal_log.append(entry)
        if len(self._signal_log) > _SIGNAL_LOG_LIMIT:
            del self._signal_log[0]

    def _on_degraded(self, event: DegradedFeed) -> None:
        self.degraded_events.append(event)
        self.log_signal({
            "instrument_id": event.instrument_id,
            "signal_type": None,
            "price": None,
            "status": "degraded",
            "reason": f"{event.consecutive_errors} consecutive feed errors",
            "evaluated_at": event.detected_at.isoformat(),
        })

    # ── Status ───────────────────────────────────────────────────────────

    def get_status(self, instrument_id: Optional[str] = None) -> dict:
        """Return aggregated or per-instrument status.

        Args:
            instrument_id: If given, return status for that instrument only.
        """
        if instrument_id is not None:
            if not self.store.is_tracking(instrument_id):
                return {"error": f"Unknown instrument: {instrument_id}"}
            return self._instrument_status(instrument_id)

        return {
            "mode": self._mode,
            "running": any(e.running for e in self._engines.values()),
            "instruments": {
                iid: self._instrument_status(iid) for iid in self.store.tracked_instruments
            },
            "account": self.strategy.account.to_dict(),
            "open_positions": len(self.strategy.open_positions()),
        }

    def _instrument_status(self, instrument_id: str) -> dict:
        engine = self._engines.get(instrument_id)
        position = self.strategy.position(instrument_id)
        return {
            "instrument_id": instrument_id,
            "running": engine.running if engine else False,
            "cycle_count": engine.cycle_count if engine else 0,
            "current_price": self.store.current_price(instrument_id),
            "current_volume_24h": self.store.current_volume_24h(instrument_id),
            "change_24h_pct": self.store.get_24h_change(instrument_id),
            "updates": self.store.get_update_stats(instrument_id),
            "position": position.to_dict() if position else None,
            "insight": self.strategy.get_insight(instrument_id),
        }
