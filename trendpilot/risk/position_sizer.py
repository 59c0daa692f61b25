"""Position sizing — pure math, no I/O.

Sizes a long entry as a fraction of current capital, shrinking the fraction
after a losing streak.
"""

# Each consecutive loss trims the nominal size by 10 %, to at most 50 %
LOSS_REDUCTION_PER_LOSS = 0.1
MAX_LOSS_REDUCTION = 0.5


def loss_throttle_factor(consecutive_losses: int) -> float:
    """Multiplier applied to the nominal size: ``1 − min(losses × 0.1, 0.5)``."""
    if consecutive_losses < 0:
        raise ValueError(
            f"consecutive_losses must be non-negative, got {consecutive_losses}"
        )
    return 1.0 - min(consecutive_losses * LOSS_REDUCTION_PER_LOSS, MAX_LOSS_REDUCTION)


def calculate_position_amount(
    capital: float,
    position_size: float,
    consecutive_losses: int = 0,
) -> float:
    """Capital to commit to a new position.

    Formula::

        amount = capital × position_size × (1 − min(losses × 0.1, 0.5))

    Args:
        capital: Current account capital (e.g. 20.0).
        position_size: Nominal fraction of capital per trade (e.g. 0.3).
        consecutive_losses: Current losing streak.

    Returns:
        The amount to commit.  Non-positive when capital is non-positive;
        the caller decides whether that rejects the entry.

    Raises:
        ValueError: If *position_size* is outside (0, 1].
    """
    if not 0 < position_size <= 1:
        raise ValueError(f"position_size must be in (0, 1], got {position_size}")
    return capital * position_size * loss_throttle_factor(consecutive_losses)


def calculate_quantity(amount: float, price: float) -> float:
    """Units bought with *amount* at *price*."""
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    return amount / price
