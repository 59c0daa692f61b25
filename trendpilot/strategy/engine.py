"""Strategy engine — long-only trend following with a risk policy.

Per instrument the state is ``FLAT → ENTERED → FLAT``.  ``decide`` returns at
most one signal per call; settlement happens in ``execute_entry`` and
``execute_exit`` once the execution bridge reports a fill.  Capital moves
only during settlement.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from trendpilot.analysis.trend import BEARISH, BULLISH, TrendAnalysis, TrendAnalyzer
from trendpilot.config import Config
from trendpilot.errors import InsufficientCapital
from trendpilot.feeds.base import FeedProvider
from trendpilot.ledger.performance import PerformanceLedger, TradeStats
from trendpilot.market.history_store import InstrumentHistoryStore
from trendpilot.risk.account import AccountState
from trendpilot.risk.position_sizer import calculate_position_amount, calculate_quantity
from trendpilot.risk.sl_tp import calculate_risk_levels, evaluate_exit
from trendpilot.strategy.models import ENTRY, EXIT, ClosedTrade, Position, Signal

logger = logging.getLogger("trendpilot")

# Account gates in evaluation order, with the result slug each one produces
_GATE_RESULTS = (
    ("loss_streak_clear", "circuit_breaker"),
    ("position_slot_free", "max_positions"),
    ("capital_above_floor", "capital_floor"),
)


def _first_failed_gate(gates: dict[str, bool]) -> Optional[str]:
    for gate, result in _GATE_RESULTS:
        if not gates[gate]:
            return result
    return None


class StrategyEngine:
    """Turns trend analyses into entry/exit signals and settles fills.

    Args:
        config: Strategy and risk settings.
        store: History store the trends are computed from.
        analyzer: ``TrendAnalyzer`` (pure).
        feed: Feed used for the live price/volume lookups in each check.
        ledger: Optional ``PerformanceLedger``; one is created if omitted.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        config: Config,
        store: InstrumentHistoryStore,
        analyzer: TrendAnalyzer,
        feed: FeedProvider,
        ledger: Optional[PerformanceLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._analyzer = analyzer
        self._feed = feed
        self._ledger = ledger or PerformanceLedger(config.initial_capital)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._account = AccountState(
            initial_capital=config.initial_capital,
            consecutive_loss_limit=config.consecutive_loss_limit,
        )
        self._positions: dict[str, Position] = {}
        self._insights: dict[str, dict] = {}

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def account(self) -> AccountState:
        return self._account

    @property
    def ledger(self) -> PerformanceLedger:
        return self._ledger

    def open_positions(self) -> tuple[Position, ...]:
        return tuple(self._positions.values())

    def position(self, instrument_id: str) -> Optional[Position]:
        return self._positions.get(instrument_id)

    def stats(self) -> TradeStats:
        return self._ledger.snapshot()

    def current_trend(self, instrument_id: str) -> Optional[TrendAnalysis]:
        return self._analyzer.analyze(self._store.history(instrument_id))

    def get_insight(self, instrument_id: str) -> Optional[dict]:
        insight = self._insights.get(instrument_id)
        return dict(insight) if insight is not None else None

    @property
    def insights(self) -> dict[str, dict]:
        return {k: dict(v) for k, v in self._insights.items()}

    # ── Decision ─────────────────────────────────────────────────────────

    async def decide(self, instrument_id: str) -> Optional[Signal]:
        """Evaluate *instrument_id* and return a signal, or ``None``.

        Also records the outcome as the instrument's insight.
        """
        insight: dict = {
            "instrument_id": instrument_id,
            "checks": {},
            "evaluated_at": self._clock().isoformat(),
        }

        trend = self.current_trend(instrument_id)
        if trend is None:
            insight["result"] = "no_trend"
            self._insights[instrument_id] = insight
            return None
        insight["trend"] = trend.to_dict()

        position = self._positions.get(instrument_id)
        if position is not None:
            insight["state"] = "ENTERED"
            return await self._check_exit(instrument_id, position, trend, insight)

        insight["state"] = "FLAT"
        gates = self._account_gates()
        insight["checks"].update(gates)
        blocked = _first_failed_gate(gates)
        if blocked is not None:
            return self._reject(instrument_id, insight, blocked)

        return await self._check_entry(instrument_id, trend, insight)

    def _account_gates(self) -> dict[str, bool]:
        return {
            "loss_streak_clear": not self._account.circuit_breaker_active,
            "position_slot_free": len(self._positions) < self._config.max_positions,
            "capital_above_floor": (
                self._account.current_capital >= self._config.min_capital_floor
            ),
        }

    def entry_block_reason(self) -> Optional[str]:
        """Result slug of the account gate that forbids a new position, if any."""
        return _first_failed_gate(self._account_gates())

    async def _check_entry(
        self,
        instrument_id: str,
        trend: TrendAnalysis,
        insight: dict,
    ) -> Optional[Signal]:
        checks = insight["checks"]
        cfg = self._config

        # 1 ── Liquidity
        volume = await self._lookup(self._feed.get_volume_24h, instrument_id, "volume")
        if volume is None:
            return self._reject(instrument_id, insight, "feed_unavailable")
        insight["volume_24h"] = volume
        checks["volume_ok"] = volume >= cfg.min_volume
        if not checks["volume_ok"]:
            return self._reject(instrument_id, insight, "low_volume")

        # 2 ── Trend quality
        checks["confidence_ok"] = trend.confidence >= cfg.min_confidence
        checks["strength_ok"] = trend.strength >= cfg.min_trend_strength
        if not (checks["confidence_ok"] and checks["strength_ok"]):
            return self._reject(instrument_id, insight, "weak_trend")

        checks["no_reversal"] = not trend.is_reversal
        if not checks["no_reversal"]:
            return self._reject(instrument_id, insight, "reversal")

        # Long only
        checks["bullish"] = trend.direction == BULLISH
        if not checks["bullish"]:
            return self._reject(instrument_id, insight, "not_bullish")

        # 3 ── Short-term volatility filter
        price = await self._lookup(self._feed.get_price, instrument_id, "price")
        if price is None:
            return self._reject(instrument_id, insight, "feed_unavailable")
        sma_gap = abs(trend.sma20 - trend.sma50)
        checks["volatility_ok"] = sma_gap <= cfg.max_volatility_pct / 100 * price
        if not checks["volatility_ok"]:
            return self._reject(instrument_id, insight, "high_volatility")

        reason = (
            f"Bullish trend {trend.price_change_pct:+.2f}% over {trend.point_count} points "
            f"(strength {trend.strength:.2f}, confidence {trend.confidence:.2f}, "
            f"volume {volume:,.0f})"
        )
        signal = Signal(
            signal_type=ENTRY,
            instrument_id=instrument_id,
            price=price,
            confidence=trend.confidence,
            reason=reason,
            created_at=self._clock(),
        )
        insight["result"] = "entry_signal"
        insight["signal"] = signal.to_dict()
        self._insights[instrument_id] = insight
        logger.info("ENTRY signal for %s at %.6f: %s", instrument_id, price, reason)
        return signal

    async def _check_exit(
        self,
        instrument_id: str,
        position: Position,
        trend: TrendAnalysis,
        insight: dict,
    ) -> Optional[Signal]:
        price = await self._lookup(self._feed.get_price, instrument_id, "price")
        if price is None:
            return self._reject(instrument_id, insight, "feed_unavailable")

        decision = evaluate_exit(
            entry_price=position.entry_price,
            current_price=price,
            stop_loss_pct=self._config.stop_loss_pct,
            take_profit_pct=self._config.take_profit_pct,
            strength=trend.strength,
            trend_confidence=trend.confidence,
            is_reversal=trend.is_reversal,
            is_bearish=trend.direction == BEARISH,
        )
        change_pct = (price - position.entry_price) / position.entry_price * 100
        insight["price_change_pct"] = round(change_pct, 2)
        if decision is None:
            insight["result"] = "holding"
            self._insights[instrument_id] = insight
            return None

        reason = f"{decision.reason}: {decision.price_change_pct:+.2f}% since entry"
        signal = Signal(
            signal_type=EXIT,
            instrument_id=instrument_id,
            price=price,
            confidence=decision.confidence,
            reason=reason,
            created_at=self._clock(),
        )
        insight["result"] = "exit_signal"
        insight["exit_reason"] = decision.reason
        insight["signal"] = signal.to_dict()
        self._insights[instrument_id] = insight
        logger.info("EXIT signal for %s at %.6f: %s", instrument_id, price, reason)
        return signal

    def _reject(self, instrument_id: str, insight: dict, result: str) -> None:
        insight["result"] = result
        self._insights[instrument_id] = insight
        logger.debug("No signal for %s: %s", instrument_id, result)
        return None

    async def _lookup(
        self,
        fetch: Callable[[str], Awaitable[float]],
        instrument_id: str,
        label: str,
    ) -> Optional[float]:
        """Call *fetch* with fixed-delay retries.

        A call that raises or returns a non-positive value counts as a
        failed attempt.  Returns ``None`` once attempts are exhausted.
        """
        attempts = self._config.feed_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                value = await fetch(instrument_id)
            except Exception as exc:
                logger.warning(
                    "%s lookup for %s failed (attempt %d/%d): %s",
                    label, instrument_id, attempt, attempts, exc,
                )
            else:
                if isinstance(value, (int, float)) and math.isfinite(value) and value > 0:
                    return float(value)
                logger.warning(
                    "%s lookup for %s returned %r (attempt %d/%d)",
                    label, instrument_id, value, attempt, attempts,
                )
            if attempt < attempts:
                await asyncio.sleep(self._config.feed_retry_delay_seconds)
        return None

    # ── Settlement ───────────────────────────────────────────────────────

    def execute_entry(
        self,
        signal: Signal,
        fill_price: Optional[float] = None,
    ) -> Optional[Position]:
        """Open a position for an ENTRY signal and debit its capital.

        Returns ``None`` (logged) if the instrument already has a position,
        or if an account gate no longer allows a new one.  Engines for other
        instruments may have settled entries or losses since ``decide`` ran,
        so the gates are evaluated again against the current account.

        Raises:
            InsufficientCapital: The sized amount is not positive.
            ValueError: *signal* is not an ENTRY or the price is not positive.
        """
        if signal.signal_type != ENTRY:
            raise ValueError(f"execute_entry needs an ENTRY signal, got {signal.signal_type}")
        instrument_id = signal.instrument_id
        if instrument_id in self._positions:
            logger.warning("Position already open for %s — entry ignored", instrument_id)
            return None
        blocked = self.entry_block_reason()
        if blocked is not None:
            logger.warning("Entry for %s rejected at settlement: %s", instrument_id, blocked)
            insight = self._insights.get(instrument_id)
            if insight is not None:
                insight["result"] = blocked
            return None

        price = signal.price if fill_price is None else fill_price
        amount = calculate_position_amount(
            self._account.current_capital,
            self._config.position_size,
            self._account.consecutive_losses,
        )
        if amount <= 0:
            logger.warning(
                "Entry for %s rejected: capital %.4f gives amount %.4f",
                instrument_id, self._account.current_capital, amount,
            )
            raise InsufficientCapital(
                f"Position amount {amount:.4f} is not positive for {instrument_id}"
            )

        levels = calculate_risk_levels(
            price, self._config.stop_loss_pct, self._config.take_profit_pct,
        )
        position = Position(
            instrument_id=instrument_id,
            entry_price=price,
            quantity=calculate_quantity(amount, price),
            stop_loss_price=levels.stop_loss_price,
            take_profit_price=levels.take_profit_price,
            opened_at=self._clock(),
            capital_committed=amount,
        )
        self._account.debit(amount)
        self._positions[instrument_id] = position
        logger.info(
            "Opened %s: %.6f units at %.6f (SL %.6f, TP %.6f, committed %.4f)",
            instrument_id, position.quantity, price,
            position.stop_loss_price, position.take_profit_price, amount,
        )
        return position

    def execute_exit(
        self,
        signal: Signal,
        fill_price: Optional[float] = None,
    ) -> Optional[ClosedTrade]:
        """Close the instrument's position and credit capital plus profit.

        Returns the ``ClosedTrade``, or ``None`` if no position is open.
        """
        if signal.signal_type != EXIT:
            raise ValueError(f"execute_exit needs an EXIT signal, got {signal.signal_type}")
        instrument_id = signal.instrument_id
        position = self._positions.get(instrument_id)
        if position is None:
            logger.warning("No open position for %s — exit ignored", instrument_id)
            return None

        exit_price = signal.price if fill_price is None else fill_price
        profit = (exit_price - position.entry_price) * position.quantity
        self._account.credit(position.capital_committed + profit)
        self._account.record_result(profit)
        del self._positions[instrument_id]

        trade = ClosedTrade(
            instrument_id=instrument_id,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            capital_committed=position.capital_committed,
            profit=profit,
            profit_pct=(exit_price - position.entry_price) / position.entry_price * 100,
            opened_at=position.opened_at,
            closed_at=self._clock(),
            reason=signal.reason,
        )
        self._ledger.record(trade, self._account.current_capital)
        logger.info(
            "Closed %s at %.6f: profit %.4f (%s), capital %.4f",
            instrument_id, exit_price, profit, signal.reason,
            self._account.current_capital,
        )
        return trade
