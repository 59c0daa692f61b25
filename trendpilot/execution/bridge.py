"""Execution bridge — the seam between signals and whatever realises them.

Only a paper bridge ships.  A live bridge would implement the same
``submit`` coroutine and keep all key material on its side of the seam.
"""

import logging
from typing import Protocol, runtime_checkable

from trendpilot.strategy.models import ENTRY, Fill, Signal

logger = logging.getLogger("trendpilot")


@runtime_checkable
class ExecutionBridge(Protocol):
    """Interface that all execution bridges must satisfy."""

    async def submit(self, signal: Signal) -> Fill:
        """Realise *signal* and report the fill."""
        ...


class PaperExecutionBridge:
    """Simulated fills at the signal price.

    Args:
        slippage_bps: Adverse slippage in basis points.  Entries fill higher,
                      exits fill lower.
    """

    def __init__(self, slippage_bps: float = 0.0) -> None:
        if slippage_bps < 0:
            raise ValueError(f"slippage_bps must be non-negative, got {slippage_bps}")
        self._slippage_bps = slippage_bps
        self.submitted: list[Signal] = []

    async def submit(self, signal: Signal) -> Fill:
        self.submitted.append(signal)
        if signal.price <= 0:
            return Fill(filled_price=0.0, success=False, detail="invalid signal price")

        slip = signal.price * self._slippage_bps / 10_000
        if signal.signal_type == ENTRY:
            price = signal.price + slip
        else:
            price = signal.price - slip
        logger.info(
            "Paper %s %s filled at %.6f", signal.signal_type, signal.instrument_id, price,
        )
        return Fill(filled_price=price, success=True, detail="paper")
