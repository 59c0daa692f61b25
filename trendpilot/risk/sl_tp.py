"""Stop-loss and take-profit rules for long positions — pure math, no I/O.

Entry levels are fixed percentages of the fill price.  The exit check widens
the take-profit target with trend strength, capped at twice the base target,
and only closes on a reversal while the position is in profit.
"""

from dataclasses import dataclass
from typing import Literal, Optional

ExitReason = Literal["stop_loss", "take_profit", "trend_reversal"]


@dataclass(frozen=True)
class RiskLevels:
    """Stop-loss and take-profit prices for a new long position."""

    stop_loss_price: float
    take_profit_price: float


@dataclass(frozen=True)
class ExitDecision:
    """Why a position should close and with what confidence."""

    reason: ExitReason
    price_change_pct: float
    confidence: float


def calculate_risk_levels(
    entry_price: float,
    stop_loss_pct: float,
    take_profit_pct: float,
) -> RiskLevels:
    """``price × (1 − sl/100)`` and ``price × (1 + tp/100)``.

    Raises ``ValueError`` for a non-positive entry price.
    """
    if entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")
    return RiskLevels(
        stop_loss_price=entry_price * (1 - stop_loss_pct / 100),
        take_profit_price=entry_price * (1 + take_profit_pct / 100),
    )


def dynamic_take_profit(take_profit_pct: float, strength: float) -> float:
    """``min(tp × (1 + strength/100), 2 × tp)``."""
    return min(take_profit_pct * (1 + strength / 100), take_profit_pct * 2)


def evaluate_exit(
    entry_price: float,
    current_price: float,
    stop_loss_pct: float,
    take_profit_pct: float,
    strength: float,
    trend_confidence: float,
    is_reversal: bool,
    is_bearish: bool,
) -> Optional[ExitDecision]:
    """Decide whether an open long should close.

    Rules, in order:
        1. **Stop-loss**: change ≤ −stop_loss_pct (confidence 100).
        2. **Take-profit**: change ≥ dynamic take-profit (confidence 100).
        3. **Reversal**: reversal flagged or trend BEARISH, and the position
           is in profit (confidence = trend confidence).

    A losing position is never closed by rule 3.

    Returns:
        ``ExitDecision`` or ``None`` to keep holding.
    """
    change_pct = (current_price - entry_price) / entry_price * 100

    if change_pct <= -stop_loss_pct:
        return ExitDecision("stop_loss", change_pct, 100.0)
    if change_pct >= dynamic_take_profit(take_profit_pct, strength):
        return ExitDecision("take_profit", change_pct, 100.0)
    if (is_reversal or is_bearish) and change_pct > 0:
        return ExitDecision("trend_reversal", change_pct, trend_confidence)
    return None
