"""Instrument history store — rolling price/volume buffer per instrument.

Polled and pushed samples both enter through :meth:`InstrumentHistoryStore.ingest`,
which is the only writer of ``InstrumentState``.  Ingestion is synchronous, so
every mutation is atomic with respect to other tasks on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from trendpilot.config import Config
from trendpilot.errors import DegradedFeed, FeedUnavailable, InvalidSample
from trendpilot.feeds.base import FeedProvider
from trendpilot.market.alerts import PriceAlertBook
from trendpilot.market.models import InstrumentSnapshot, InstrumentState, PricePoint

logger = logging.getLogger("trendpilot")

# Fraction of the update interval a new sample must wait after the last one
_DEBOUNCE_FRACTION = 0.9

DegradedListener = Callable[[DegradedFeed], None]


def validate_sample(price: float, volume_24h: float) -> None:
    """Raise ``InvalidSample`` unless price > 0 and volume >= 0, both finite."""
    if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
        raise InvalidSample(f"price must be a positive finite number, got {price!r}")
    if (
        not isinstance(volume_24h, (int, float))
        or not math.isfinite(volume_24h)
        or volume_24h < 0
    ):
        raise InvalidSample(
            f"volume_24h must be a non-negative finite number, got {volume_24h!r}"
        )


class InstrumentHistoryStore:
    """Tracks instruments and keeps their most recent samples.

    Args:
        config: Application configuration (interval, history length,
                error threshold, push toggle).
        feed: Any ``FeedProvider``.
        alerts: Optional ``PriceAlertBook`` checked on every ingested sample.
        clock: Returns the current aware UTC datetime.  Injectable for tests.
        schedule_polling: When False, ``start_tracking`` schedules no
                          polling task (replay drives ingestion directly).
    """

    def __init__(
        self,
        config: Config,
        feed: FeedProvider,
        alerts: Optional[PriceAlertBook] = None,
        clock: Optional[Callable[[], datetime]] = None,
        schedule_polling: bool = True,
    ) -> None:
        self._config = config
        self._feed = feed
        self._alerts = alerts
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._schedule_polling = schedule_polling
        self._states: dict[str, InstrumentState] = {}
        self._poll_tasks: dict[str, asyncio.Task] = {}
        self._pushed: set[str] = set()
        self._degraded_listeners: list[DegradedListener] = []
        self.dropped_samples: int = 0

    @property
    def config(self) -> Config:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start_tracking(self, instrument_id: str) -> None:
        """Fetch an initial sample and begin tracking *instrument_id*.

        A second call for a tracked id is logged and ignored.  Feed errors
        from the initial fetch propagate and nothing is tracked.
        """
        if not isinstance(instrument_id, str) or not instrument_id.strip():
            raise ValueError(f"instrument_id must be a non-empty string, got {instrument_id!r}")
        if instrument_id in self._states:
            logger.info("Already tracking %s", instrument_id)
            return

        price = await self._feed.get_price(instrument_id)
        volume = await self._feed.get_volume_24h(instrument_id)
        validate_sample(price, volume)

        # Another caller may have finished while this one awaited the feed
        if instrument_id in self._states:
            logger.info("Already tracking %s", instrument_id)
            return

        now = self._clock()
        self._states[instrument_id] = InstrumentState(
            instrument_id=instrument_id,
            current_price=price,
            current_volume_24h=volume,
            history=[PricePoint(timestamp=now, price=price, volume_24h=volume)],
            last_updated=now,
            update_count=1,
        )
        if self._schedule_polling:
            self._poll_tasks[instrument_id] = asyncio.create_task(
                self._poll_loop(instrument_id),
                name=f"history-poll-{instrument_id}",
            )
        if self._config.feed_push:
            self._feed.subscribe(instrument_id, self._on_push, self._on_push_error)
            self._pushed.add(instrument_id)
        logger.info(
            "Started tracking %s at %.6f (volume %.2f)", instrument_id, price, volume,
        )

    def stop_tracking(self, instrument_id: str) -> None:
        """Cancel polling and push for *instrument_id* and discard its state.

        No-op for an untracked id.
        """
        task = self._poll_tasks.pop(instrument_id, None)
        if task is not None:
            task.cancel()
        if instrument_id in self._pushed:
            self._pushed.discard(instrument_id)
            self._feed.unsubscribe(instrument_id)
        if self._states.pop(instrument_id, None) is not None:
            logger.info("Stopped tracking %s", instrument_id)

    async def shutdown(self) -> None:
        """Stop tracking every instrument and wait for polling tasks to end."""
        tasks = list(self._poll_tasks.values())
        for instrument_id in list(self._states):
            self.stop_tracking(instrument_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def add_degraded_listener(self, listener: DegradedListener) -> None:
        self._degraded_listeners.append(listener)

    # ── Ingestion ────────────────────────────────────────────────────────

    def ingest(self, instrument_id: str, sample: PricePoint) -> bool:
        """Apply *sample* to the instrument's history.

        Returns ``True`` when applied, ``False`` when dropped (untracked id,
        out-of-order, or inside the debounce window).

        Raises:
            InvalidSample: Non-finite or non-positive price, or non-finite
                           or negative volume.
        """
        validate_sample(sample.price, sample.volume_24h)

        state = self._states.get(instrument_id)
        if state is None:
            logger.debug("Dropping sample for untracked %s", instrument_id)
            return False

        last = state.last_updated
        if last is not None:
            if sample.timestamp < last:
                self.dropped_samples += 1
                logger.warning(
                    "Dropping out-of-order sample for %s (%s < %s)",
                    instrument_id, sample.timestamp.isoformat(), last.isoformat(),
                )
                return False
            elapsed = (sample.timestamp - last).total_seconds()
            if elapsed < _DEBOUNCE_FRACTION * self._config.update_interval_seconds:
                self.dropped_samples += 1
                logger.debug(
                    "Dropping sample for %s %.2fs after the previous one",
                    instrument_id, elapsed,
                )
                return False

        previous_volume = state.current_volume_24h
        if previous_volume > 0:
            state.volume_change_pct = (
                (sample.volume_24h - previous_volume) / previous_volume * 100
            )
        else:
            state.volume_change_pct = 0.0

        state.current_price = sample.price
        state.current_volume_24h = sample.volume_24h
        state.history.append(sample)
        overflow = len(state.history) - self._config.history_length
        if overflow > 0:
            del state.history[:overflow]
        state.last_updated = sample.timestamp
        state.update_count += 1
        state.consecutive_error_count = 0

        if self._alerts is not None:
            self._alerts.check_price(instrument_id, sample.price)
        return True

    async def update_price(self, instrument_id: str) -> bool:
        """Poll the feed once and ingest the result.

        Feed and sample errors are counted via :meth:`record_error`.  A result
        that arrives after the instrument was stopped or restarted is discarded.
        """
        state = self._states.get(instrument_id)
        if state is None:
            return False

        try:
            price = await self._feed.get_price(instrument_id)
            volume = await self._feed.get_volume_24h(instrument_id)
        except FeedUnavailable as exc:
            if self._states.get(instrument_id) is not state:
                return False
            logger.warning("Price update for %s failed: %s", instrument_id, exc)
            self.record_error(instrument_id)
            return False

        if self._states.get(instrument_id) is not state:
            logger.debug("Discarding stale update for %s", instrument_id)
            return False

        sample = PricePoint(timestamp=self._clock(), price=price, volume_24h=volume)
        try:
            return self.ingest(instrument_id, sample)
        except InvalidSample as exc:
            logger.warning("Invalid sample for %s: %s", instrument_id, exc)
            self.record_error(instrument_id)
            return False

    def record_error(self, instrument_id: str) -> None:
        """Count a failed update; emit ``DegradedFeed`` at the threshold."""
        state = self._states.get(instrument_id)
        if state is None:
            return
        state.consecutive_error_count += 1
        if state.consecutive_error_count < self._config.max_consecutive_errors:
            return

        event = DegradedFeed(
            instrument_id=instrument_id,
            consecutive_errors=state.consecutive_error_count,
            detected_at=self._clock(),
        )
        logger.warning(
            "Feed degraded for %s: %d consecutive errors",
            instrument_id, state.consecutive_error_count,
        )
        for listener in list(self._degraded_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Degraded-feed listener failed for %s", instrument_id)

    async def _poll_loop(self, instrument_id: str) -> None:
        interval = self._config.update_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.update_price(instrument_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error polling %s", instrument_id)
                self.record_error(instrument_id)

    def _on_push(self, instrument_id: str, sample: PricePoint) -> None:
        try:
            self.ingest(instrument_id, sample)
        except InvalidSample as exc:
            logger.warning("Invalid pushed sample for %s: %s", instrument_id, exc)
            self.record_error(instrument_id)

    def _on_push_error(self, instrument_id: str, exc: Exception) -> None:
        logger.warning("Push subscription for %s failed: %s", instrument_id, exc)
        self.record_error(instrument_id)

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def tracked_instruments(self) -> list[str]:
        return list(self._states.keys())

    def is_tracking(self, instrument_id: str) -> bool:
        return instrument_id in self._states

    def current_price(self, instrument_id: str) -> Optional[float]:
        state = self._states.get(instrument_id)
        return state.current_price if state else None

    def current_volume_24h(self, instrument_id: str) -> Optional[float]:
        state = self._states.get(instrument_id)
        return state.current_volume_24h if state else None

    def volume_change_pct(self, instrument_id: str) -> Optional[float]:
        state = self._states.get(instrument_id)
        return state.volume_change_pct if state else None

    def history(self, instrument_id: str) -> tuple[PricePoint, ...]:
        """Retained samples, oldest first.  Empty for an untracked id."""
        state = self._states.get(instrument_id)
        return tuple(state.history) if state else ()

    def snapshot(self, instrument_id: str) -> Optional[InstrumentSnapshot]:
        state = self._states.get(instrument_id)
        return state.snapshot() if state else None

    def get_update_stats(self, instrument_id: str) -> Optional[dict]:
        state = self._states.get(instrument_id)
        if state is None:
            return None
        return {
            "update_count": state.update_count,
            "consecutive_error_count": state.consecutive_error_count,
            "last_updated": state.last_updated.isoformat() if state.last_updated else None,
            "history_size": len(state.history),
        }

    def get_24h_change(self, instrument_id: str) -> Optional[float]:
        """Percent change from the earliest sample in the last 24h to now.

        ``None`` when untracked, with fewer than 2 samples, or when no sample
        falls inside the window.
        """
        state = self._states.get(instrument_id)
        if state is None or len(state.history) < 2:
            return None
        cutoff = self._clock() - timedelta(hours=24)
        earliest = next((p for p in state.history if p.timestamp >= cutoff), None)
        if earliest is None:
            return None
        return round((state.current_price - earliest.price) / earliest.price * 100, 2)
