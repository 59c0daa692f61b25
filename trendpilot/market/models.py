"""Market data models — price samples and per-instrument tracking state."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class PricePoint:
    """A single price/volume sample for an instrument."""

    timestamp: datetime
    price: float
    volume_24h: float


@dataclass
class InstrumentState:
    """Mutable tracking state owned by the history store.

    Only the store's ingestion path writes to it.  Everything else reads
    an ``InstrumentSnapshot``.
    """

    instrument_id: str
    current_price: float
    current_volume_24h: float
    history: list[PricePoint] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    update_count: int = 0
    consecutive_error_count: int = 0
    volume_change_pct: float = 0.0

    def snapshot(self) -> "InstrumentSnapshot":
        return InstrumentSnapshot(
            instrument_id=self.instrument_id,
            current_price=self.current_price,
            current_volume_24h=self.current_volume_24h,
            history=tuple(self.history),
            last_updated=self.last_updated,
            update_count=self.update_count,
            consecutive_error_count=self.consecutive_error_count,
            volume_change_pct=self.volume_change_pct,
        )


@dataclass(frozen=True)
class InstrumentSnapshot:
    """Read-only copy of an ``InstrumentState`` for publishing."""

    instrument_id: str
    current_price: float
    current_volume_24h: float
    history: tuple[PricePoint, ...]
    last_updated: Optional[datetime]
    update_count: int
    consecutive_error_count: int
    volume_change_pct: float
