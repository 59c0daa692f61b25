"""Account state and the consecutive-loss circuit breaker — pure math, no I/O.

Capital moves only through :meth:`AccountState.debit` on entry and
:meth:`AccountState.credit` on exit.
"""


class AccountState:
    """Tracks simulated capital and the current losing streak.

    Args:
        initial_capital: Starting capital (must be positive).
        consecutive_loss_limit: Losing exits in a row that halt new entries
                                (default 5).
    """

    def __init__(
        self,
        initial_capital: float,
        consecutive_loss_limit: int = 5,
    ) -> None:
        if initial_capital <= 0:
            raise ValueError(
                f"initial_capital must be positive, got {initial_capital}"
            )
        self._initial_capital: float = initial_capital
        self._current_capital: float = initial_capital
        self._consecutive_losses: int = 0
        self._consecutive_loss_limit: int = consecutive_loss_limit

    # ── Mutation ─────────────────────────────────────────────────────────

    def debit(self, amount: float) -> None:
        """Commit *amount* to a new position."""
        if amount <= 0:
            raise ValueError(f"debit amount must be positive, got {amount}")
        self._current_capital -= amount

    def credit(self, amount: float) -> None:
        """Return committed capital plus profit from a closed position."""
        self._current_capital += amount

    def record_result(self, profit: float) -> None:
        """A win resets the losing streak; anything else extends it."""
        if profit > 0:
            self._consecutive_losses = 0
        else:
            self._consecutive_losses += 1

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def initial_capital(self) -> float:
        return self._initial_capital

    @property
    def current_capital(self) -> float:
        return self._current_capital

    @property
    def consecutive_losses(self) -> int:
        return self._consecutive_losses

    @property
    def drawdown_pct(self) -> float:
        """``(current − initial) / initial × 100``; negative when below start."""
        return (
            (self._current_capital - self._initial_capital) / self._initial_capital
        ) * 100.0

    @property
    def circuit_breaker_active(self) -> bool:
        """``True`` once the losing streak reaches the limit."""
        return self._consecutive_losses >= self._consecutive_loss_limit

    def to_dict(self) -> dict:
        return {
            "initial_capital": self._initial_capital,
            "current_capital": round(self._current_capital, 6),
            "consecutive_losses": self._consecutive_losses,
            "drawdown_pct": round(self.drawdown_pct, 2),
            "circuit_breaker_active": self.circuit_breaker_active,
        }
