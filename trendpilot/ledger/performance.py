"""Performance ledger — realised profit, win rate and drawdown from closed trades."""

from dataclasses import asdict, dataclass
from typing import Optional, Sequence

from trendpilot.strategy.models import ClosedTrade


@dataclass(frozen=True)
class TradeStats:
    """Immutable snapshot of the ledger.

    ``win_rate`` is a percentage in ``[0, 100]``.  ``max_drawdown_pct`` is the
    most negative capital change versus initial capital seen at any exit
    settlement, so it is always ``<= 0``.
    """

    total_trades: int
    winning_trades: int
    total_profit: float
    current_capital: float
    max_drawdown_pct: float
    win_rate: float
    average_profit: float

    def to_dict(self) -> dict:
        return asdict(self)


class PerformanceLedger:
    """Aggregates closed trades as they settle.

    Args:
        initial_capital: Starting capital used for drawdown.
    """

    def __init__(self, initial_capital: float) -> None:
        if initial_capital <= 0:
            raise ValueError(
                f"initial_capital must be positive, got {initial_capital}"
            )
        self._initial_capital = initial_capital
        self._current_capital = initial_capital
        self._trades: list[ClosedTrade] = []
        self._winning_trades = 0
        self._total_profit = 0.0
        self._max_drawdown_pct = 0.0

    def record(self, trade: ClosedTrade, current_capital: float) -> None:
        """Add a settled trade and the capital after its settlement."""
        self._trades.append(trade)
        self._total_profit += trade.profit
        if trade.profit > 0:
            self._winning_trades += 1
        self._current_capital = current_capital
        drawdown = (
            (current_capital - self._initial_capital) / self._initial_capital
        ) * 100.0
        self._max_drawdown_pct = min(self._max_drawdown_pct, drawdown)

    @property
    def closed_trades(self) -> tuple[ClosedTrade, ...]:
        return tuple(self._trades)

    def snapshot(self) -> TradeStats:
        total = len(self._trades)
        win_rate = (self._winning_trades / total * 100.0) if total else 0.0
        average = (self._total_profit / total) if total else 0.0
        return TradeStats(
            total_trades=total,
            winning_trades=self._winning_trades,
            total_profit=self._total_profit,
            current_capital=self._current_capital,
            max_drawdown_pct=self._max_drawdown_pct,
            win_rate=win_rate,
            average_profit=average,
        )


def summarize_trades(trades: Sequence[ClosedTrade]) -> dict:
    """Compute summary statistics from a list of closed trades.

    Returns:
        Dict with ``total_trades``, ``winning_trades``, ``losing_trades``,
        ``win_rate`` (percent), ``profit_factor``, ``net_profit``,
        ``average_profit`` and ``max_drawdown`` (largest peak-to-trough
        decline of cumulative profit, as a positive number).
    """
    if not trades:
        return {
            "total_trades": 0,
            "winning_trades": 0,
            "losing_trades": 0,
            "win_rate": 0.0,
            "profit_factor": None,
            "net_profit": 0.0,
            "average_profit": 0.0,
            "max_drawdown": 0.0,
        }

    profits = [t.profit for t in trades]
    total = len(profits)
    winners = [p for p in profits if p > 0]
    losers = [p for p in profits if p <= 0]

    gross_profit = sum(winners)
    gross_loss = abs(sum(losers))
    profit_factor: Optional[float] = (
        gross_profit / gross_loss if gross_loss > 0 else None
    )
    net_profit = sum(profits)

    return {
        "total_trades": total,
        "winning_trades": len(winners),
        "losing_trades": len(losers),
        "win_rate": round(len(winners) / total * 100, 2),
        "profit_factor": round(profit_factor, 4) if profit_factor is not None else None,
        "net_profit": round(net_profit, 6),
        "average_profit": round(net_profit / total, 6),
        "max_drawdown": round(_max_drawdown(profits), 6),
    }


def _max_drawdown(profits: list[float]) -> float:
    """Largest peak-to-trough decline of the cumulative profit curve."""
    cumulative = 0.0
    peak = 0.0
    max_dd = 0.0
    for p in profits:
        cumulative += p
        if cumulative > peak:
            peak = cumulative
        dd = peak - cumulative
        if dd > max_dd:
            max_dd = dd
    return max_dd
