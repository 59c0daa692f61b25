"""Price alerts — one-shot threshold callbacks checked on every ingested sample."""

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Literal

logger = logging.getLogger("trendpilot")

AlertCondition = Literal["above", "below"]


@dataclass(frozen=True)
class PriceAlert:
    """A pending alert.  Removed as soon as it fires."""

    alert_id: str
    instrument_id: str
    condition: AlertCondition
    price: float
    callback: Callable[[float], None]


class PriceAlertBook:
    """Holds pending price alerts for all instruments."""

    def __init__(self) -> None:
        self._alerts: dict[str, PriceAlert] = {}
        self._ids = itertools.count(1)

    def create_alert(
        self,
        instrument_id: str,
        condition: AlertCondition,
        price: float,
        callback: Callable[[float], None],
    ) -> str:
        """Register an alert and return its id.

        Raises ``ValueError`` for an unknown condition or non-positive price.
        """
        if condition not in ("above", "below"):
            raise ValueError(f"condition must be 'above' or 'below', got '{condition}'")
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        alert_id = f"{instrument_id}-{condition}-{price}-{next(self._ids)}"
        self._alerts[alert_id] = PriceAlert(
            alert_id=alert_id,
            instrument_id=instrument_id,
            condition=condition,
            price=price,
            callback=callback,
        )
        return alert_id

    def remove_alert(self, alert_id: str) -> bool:
        return self._alerts.pop(alert_id, None) is not None

    def check_price(self, instrument_id: str, current_price: float) -> list[str]:
        """Fire and remove every alert crossed by *current_price*.

        Comparison is strict: an ``above`` alert at 100 does not fire at 100.
        Returns the ids of the alerts that fired.
        """
        fired: list[str] = []
        for alert in list(self._alerts.values()):
            if alert.instrument_id != instrument_id:
                continue
            crossed = (
                (alert.condition == "above" and current_price > alert.price)
                or (alert.condition == "below" and current_price < alert.price)
            )
            if not crossed:
                continue
            # An earlier callback may already have removed this alert
            if self._alerts.pop(alert.alert_id, None) is None:
                continue
            fired.append(alert.alert_id)
            try:
                alert.callback(current_price)
            except Exception:
                logger.exception("Price alert %s callback failed", alert.alert_id)
        return fired

    def clear_alerts(self, instrument_id: str) -> int:
        """Drop every pending alert for *instrument_id*; returns how many."""
        stale = [a.alert_id for a in self._alerts.values() if a.instrument_id == instrument_id]
        for alert_id in stale:
            del self._alerts[alert_id]
        return len(stale)

    def active_alerts(self, instrument_id: str | None = None) -> list[PriceAlert]:
        alerts = list(self._alerts.values())
        if instrument_id is not None:
            alerts = [a for a in alerts if a.instrument_id == instrument_id]
        return alerts
