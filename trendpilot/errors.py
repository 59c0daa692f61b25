"""Error taxonomy shared by the market, feed, and strategy layers.

None of these conditions is fatal to the process.  They are raised inside a
component and caught at its boundary, where they become a logged event or an
explicit "no signal" result.
"""

from dataclasses import dataclass
from datetime import datetime


class TrendPilotError(Exception):
    """Base class for all TrendPilot errors."""


class InvalidSample(TrendPilotError):
    """A feed sample had a non-finite, non-positive price or a bad volume."""


class FeedUnavailable(TrendPilotError):
    """A feed lookup failed after exhausting its retries."""


class RateLimited(FeedUnavailable):
    """Upstream kept answering 429 after the backoff schedule ran out."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InsufficientCapital(TrendPilotError):
    """Position sizing produced a non-positive amount."""


@dataclass(frozen=True)
class DegradedFeed:
    """Observability event emitted when an instrument keeps failing to update.

    Never raised.  Tracking continues after the event.
    """

    instrument_id: str
    consecutive_errors: int
    detected_at: datetime
