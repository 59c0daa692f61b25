"""Feed provider protocol and the polling subscription shared by REST adapters.

Every price source implements the same capability interface so the history
store never needs to know which venue a sample came from.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, runtime_checkable

from trendpilot.market.models import PricePoint

logger = logging.getLogger("trendpilot.feeds")

SampleCallback = Callable[[str, PricePoint], None]
ErrorCallback = Callable[[str, Exception], None]


@runtime_checkable
class FeedProvider(Protocol):
    """Interface that all price/volume feeds must satisfy."""

    async def get_price(self, instrument_id: str) -> float:
        """Return the latest price, or raise ``FeedUnavailable``."""
        ...

    async def get_volume_24h(self, instrument_id: str) -> float:
        """Return the trailing 24h volume, or raise ``FeedUnavailable``."""
        ...

    def subscribe(
        self,
        instrument_id: str,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Start pushing samples for *instrument_id* to *on_sample*.

        Failures of the subscription are reported to *on_error* when given.
        """
        ...

    def unsubscribe(self, instrument_id: str) -> None:
        """Stop pushing samples for *instrument_id*.  No-op if not subscribed."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


class PollingFeed(ABC):
    """Base class for REST feeds: ``subscribe`` polls price and volume.

    Subclasses implement :meth:`get_price` and :meth:`get_volume_24h`.

    Args:
        poll_interval: Seconds between polls for a subscribed instrument.
    """

    def __init__(self, poll_interval: float = 2.0) -> None:
        self._poll_interval = poll_interval
        self._subscriptions: dict[str, asyncio.Task] = {}

    @abstractmethod
    async def get_price(self, instrument_id: str) -> float:
        ...

    @abstractmethod
    async def get_volume_24h(self, instrument_id: str) -> float:
        ...

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(
        self,
        instrument_id: str,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if instrument_id in self._subscriptions:
            return
        self._subscriptions[instrument_id] = asyncio.create_task(
            self._poll(instrument_id, on_sample, on_error),
            name=f"feed-poll-{instrument_id}",
        )

    def unsubscribe(self, instrument_id: str) -> None:
        task = self._subscriptions.pop(instrument_id, None)
        if task is not None:
            task.cancel()

    @property
    def subscribed(self) -> list[str]:
        return list(self._subscriptions.keys())

    async def _poll(
        self,
        instrument_id: str,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        while True:
            try:
                price = await self.get_price(instrument_id)
                volume = await self.get_volume_24h(instrument_id)
                on_sample(
                    instrument_id,
                    PricePoint(
                        timestamp=datetime.now(timezone.utc),
                        price=price,
                        volume_24h=volume,
                    ),
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Polling %s failed: %s", instrument_id, exc)
                if on_error is not None:
                    report_error(on_error, instrument_id, exc)
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        for instrument_id in list(self._subscriptions):
            self.unsubscribe(instrument_id)


def report_error(on_error: ErrorCallback, instrument_id: str, exc: Exception) -> None:
    """Hand a subscription failure to *on_error*; a failing handler is logged."""
    try:
        on_error(instrument_id, exc)
    except Exception:
        logger.exception("Error handler failed for %s", instrument_id)


def parse_positive(value: object) -> Optional[float]:
    """Coerce an upstream numeric field, returning ``None`` if unusable."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number
