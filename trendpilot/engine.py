"""TrendPilot — Trading engine (per-instrument evaluation loop).

Connects the strategy, the execution bridge and the trade journal.
Strategy decides → bridge fills → strategy settles → journal records.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from trendpilot.errors import InsufficientCapital
from trendpilot.execution.bridge import ExecutionBridge
from trendpilot.repos.trade_repo import TradeRepo
from trendpilot.strategy.engine import StrategyEngine
from trendpilot.strategy.models import ENTRY, Signal

logger = logging.getLogger("trendpilot")

_REASON_LABELS = {
    "no_trend": "Not enough history",
    "circuit_breaker": "Consecutive-loss limit reached",
    "max_positions": "Max open positions reached",
    "capital_floor": "Capital below floor",
    "feed_unavailable": "Feed unavailable",
    "low_volume": "24h volume too low",
    "weak_trend": "Trend too weak",
    "reversal": "Reversal detected",
    "not_bullish": "Trend not bullish",
    "high_volatility": "Short-term volatility too high",
    "holding": "Holding position",
}


class TradingEngine:
    """Runs one evaluation-and-execution cycle per call for one instrument.

    Args:
        instrument_id: Instrument this engine trades.
        strategy: Shared ``StrategyEngine``.
        bridge: An ``ExecutionBridge`` (or compatible duck-type / mock).
        trade_repo: Optional journal for entries and exits.
        mode: Label written to the journal (``"paper"`` or ``"replay"``).
        on_event: Called with a signal-log entry after each cycle.
    """

    def __init__(
        self,
        instrument_id: str,
        strategy: StrategyEngine,
        bridge: ExecutionBridge,
        trade_repo: Optional[TradeRepo] = None,
        mode: str = "paper",
        on_event: Optional[Callable[[dict], None]] = None,
    ) -> None:
        self._instrument_id = instrument_id
        self._strategy = strategy
        self._bridge = bridge
        self._trade_repo = trade_repo
        self._mode = mode
        self._on_event = on_event
        self._lock = asyncio.Lock()
        self._open_trade_id: Optional[int] = None
        self._running: bool = False
        self._cycle_count: int = 0
        self.last_result: Optional[dict] = None

    @property
    def instrument_id(self) -> str:
        return self._instrument_id

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def stop(self) -> None:
        """Signal the engine to stop after the current cycle."""
        self._running = False

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: float = 60.0,
        max_cycles: int = 0,
    ) -> list[dict]:
        """Run the evaluation loop until stopped.

        Args:
            poll_interval: Seconds between cycles.
            max_cycles: Stop after this many cycles (0 = unlimited).

        Returns:
            List of per-cycle result dicts.
        """
        self._running = True
        results: list[dict] = []
        cycle = 0

        while self._running:
            cycle += 1
            try:
                result = await self.run_once()
            except Exception as exc:
                logger.error("%s cycle %d error: %s", self._instrument_id, cycle, exc)
                result = {"action": "error", "reason": str(exc)}
                self._publish(result, datetime.now(timezone.utc))
            results.append(result)
            logger.debug("%s cycle %d: %s", self._instrument_id, cycle, result.get("action"))

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep, checks _running every second
            remaining = poll_interval
            while remaining > 0 and self._running:
                step = min(1.0, remaining)
                await asyncio.sleep(step)
                remaining -= step

        self._running = False
        return results

    # ── Single cycle ─────────────────────────────────────────────────────

    async def run_once(self) -> dict:
        """Execute one cycle.

        Returns a dict describing the action taken:

        - ``{"action": "skipped", "reason": "..."}``
        - ``{"action": "fill_failed", "signal_type": "...", "reason": "..."}``
        - ``{"action": "entered", ...}``
        - ``{"action": "exited", ...}``

        Cycles for the same engine never interleave.
        """
        async with self._lock:
            self._cycle_count += 1
            now = datetime.now(timezone.utc)

            signal = await self._strategy.decide(self._instrument_id)
            if signal is None:
                insight = self._strategy.get_insight(self._instrument_id) or {}
                result = {"action": "skipped", "reason": insight.get("result", "no_signal")}
                self._publish(result, now)
                return result

            try:
                fill = await self._bridge.submit(signal)
            except Exception as exc:
                logger.error(
                    "Bridge submit failed for %s %s: %s",
                    signal.signal_type, self._instrument_id, exc,
                )
                result = {
                    "action": "fill_failed",
                    "signal_type": signal.signal_type,
                    "reason": str(exc),
                }
                self._publish(result, now, signal)
                return result

            if not fill.success:
                logger.warning(
                    "Fill failed for %s %s: %s",
                    signal.signal_type, self._instrument_id, fill.detail,
                )
                result = {
                    "action": "fill_failed",
                    "signal_type": signal.signal_type,
                    "reason": fill.detail,
                }
                self._publish(result, now, signal)
                return result

            if signal.signal_type == ENTRY:
                result = self._settle_entry(signal, fill.filled_price)
            else:
                result = self._settle_exit(signal, fill.filled_price)
            self._publish(result, now, signal)
            return result

    def _settle_entry(self, signal: Signal, fill_price: float) -> dict:
        try:
            position = self._strategy.execute_entry(signal, fill_price)
        except InsufficientCapital as exc:
            return {"action": "skipped", "reason": "insufficient_capital", "detail": str(exc)}
        if position is None:
            reason = self._strategy.entry_block_reason() or "position_open"
            logger.warning(
                "Fill for %s discarded at settlement: %s", self._instrument_id, reason,
            )
            return {"action": "skipped", "reason": reason}

        if self._trade_repo is not None:
            try:
                self._open_trade_id = self._trade_repo.insert_trade(
                    mode=self._mode, position=position, entry_reason=signal.reason,
                )
            except Exception as exc:
                logger.error("Failed to journal entry for %s: %s", self._instrument_id, exc)

        return {
            "action": "entered",
            "entry": position.entry_price,
            "quantity": position.quantity,
            "sl": position.stop_loss_price,
            "tp": position.take_profit_price,
            "capital_committed": position.capital_committed,
            "reason": signal.reason,
        }

    def _settle_exit(self, signal: Signal, fill_price: float) -> dict:
        trade = self._strategy.execute_exit(signal, fill_price)
        if trade is None:
            return {"action": "skipped", "reason": "no_position"}

        if self._trade_repo is not None and self._open_trade_id is not None:
            try:
                self._trade_repo.close_trade(self._open_trade_id, trade)
            except Exception as exc:
                logger.error("Failed to journal exit for %s: %s", self._instrument_id, exc)
        self._open_trade_id = None

        return {
            "action": "exited",
            "exit": trade.exit_price,
            "profit": trade.profit,
            "profit_pct": trade.profit_pct,
            "reason": signal.reason,
        }

    def _publish(self, result: dict, now: datetime, signal: Optional[Signal] = None) -> None:
        self.last_result = result
        if self._on_event is None:
            return
        reason_slug = result.get("reason", "")
        if signal is not None and result["action"] in ("entered", "exited"):
            reason = signal.reason
        else:
            reason = _REASON_LABELS.get(
                reason_slug, str(reason_slug).replace("_", " ").capitalize(),
            )
        self._on_event({
            "instrument_id": self._instrument_id,
            "signal_type": signal.signal_type if signal else None,
            "price": signal.price if signal else None,
            "status": result["action"],
            "reason": reason,
            "evaluated_at": now.isoformat(),
        })
