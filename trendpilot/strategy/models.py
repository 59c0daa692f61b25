"""Strategy data models — signals, positions, fills and closed trades."""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Literal

SignalType = Literal["ENTRY", "EXIT"]
ENTRY: SignalType = "ENTRY"
EXIT: SignalType = "EXIT"


def _serialise(obj) -> dict:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


@dataclass(frozen=True)
class Signal:
    """An ENTRY or EXIT recommendation.  Not an executed trade."""

    signal_type: SignalType
    instrument_id: str
    price: float
    confidence: float
    reason: str
    created_at: datetime

    def to_dict(self) -> dict:
        return _serialise(self)


@dataclass(frozen=True)
class Position:
    """An open long position.  At most one per instrument."""

    instrument_id: str
    entry_price: float
    quantity: float
    stop_loss_price: float
    take_profit_price: float
    opened_at: datetime
    capital_committed: float

    def to_dict(self) -> dict:
        return _serialise(self)


@dataclass(frozen=True)
class Fill:
    """Result returned by an execution bridge."""

    filled_price: float
    success: bool
    detail: str = ""


@dataclass(frozen=True)
class ClosedTrade:
    """A settled round trip."""

    instrument_id: str
    entry_price: float
    exit_price: float
    quantity: float
    capital_committed: float
    profit: float
    profit_pct: float
    opened_at: datetime
    closed_at: datetime
    reason: str

    @property
    def is_win(self) -> bool:
        return self.profit > 0

    def to_dict(self) -> dict:
        return _serialise(self)
