"""Internal API routers — /status, /instruments, /positions, /stats, /signals, /trades, /alerts.

Market data across venues is served under /instruments/{id}/market.

Read-only views over the engine manager, plus alert creation.  No business
logic, no DB access beyond the trade repo.
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Query

from trendpilot.errors import FeedUnavailable
from trendpilot.feeds.aggregate import AggregatedFeed

logger = logging.getLogger("trendpilot")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_engine_manager = None  # Set via configure_routers()
_trade_repo = None      # Set via configure_routers()


def configure_routers(engine_manager=None, trade_repo=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        engine_manager: An ``EngineManager`` instance (or duck-type for tests).
        trade_repo: A ``TradeRepo`` instance (or duck-type for tests).
    """
    global _engine_manager, _trade_repo  # noqa: PLW0603
    _engine_manager = engine_manager
    _trade_repo = trade_repo


def _unknown(instrument_id: str) -> dict:
    return {"error": f"Unknown instrument: {instrument_id}"}


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return aggregated status for all instruments."""
    if _engine_manager is None:
        return {"mode": "idle", "running": False, "instruments": {}}
    return _engine_manager.get_status()


@router.get("/instruments")
async def get_instruments():
    """Return tracked instruments with their latest price and volume."""
    if _engine_manager is None:
        return {"instruments": []}
    store = _engine_manager.store
    return {
        "instruments": [
            {
                "instrument_id": iid,
                "current_price": store.current_price(iid),
                "current_volume_24h": store.current_volume_24h(iid),
                "volume_change_pct": store.volume_change_pct(iid),
                "change_24h_pct": store.get_24h_change(iid),
            }
            for iid in store.tracked_instruments
        ]
    }


@router.get("/instruments/{instrument_id}")
async def get_instrument(
    instrument_id: str,
    history_limit: int = Query(default=100, ge=0, le=1440),
):
    """Return one instrument's snapshot with its most recent history."""
    if _engine_manager is None:
        return _unknown(instrument_id)
    snapshot = _engine_manager.store.snapshot(instrument_id)
    if snapshot is None:
        return _unknown(instrument_id)
    history = snapshot.history[-history_limit:] if history_limit else ()
    return {
        "instrument_id": snapshot.instrument_id,
        "current_price": snapshot.current_price,
        "current_volume_24h": snapshot.current_volume_24h,
        "volume_change_pct": snapshot.volume_change_pct,
        "last_updated": snapshot.last_updated.isoformat() if snapshot.last_updated else None,
        "update_count": snapshot.update_count,
        "consecutive_error_count": snapshot.consecutive_error_count,
        "change_24h_pct": _engine_manager.store.get_24h_change(instrument_id),
        "history": [
            {
                "timestamp": p.timestamp.isoformat(),
                "price": p.price,
                "volume_24h": p.volume_24h,
            }
            for p in history
        ],
    }


@router.get("/instruments/{instrument_id}/trend")
async def get_instrument_trend(instrument_id: str):
    """Return the current trend analysis and the latest strategy insight."""
    if _engine_manager is None or not _engine_manager.store.is_tracking(instrument_id):
        return _unknown(instrument_id)
    trend = _engine_manager.strategy.current_trend(instrument_id)
    return {
        "instrument_id": instrument_id,
        "trend": trend.to_dict() if trend else None,
        "insight": _engine_manager.strategy.get_insight(instrument_id),
    }


@router.get("/instruments/{instrument_id}/market")
async def get_instrument_market(instrument_id: str):
    """Return per-venue prices, market cap and liquidity for one instrument.

    Only available with the aggregated feed.
    """
    if _engine_manager is None or not _engine_manager.store.is_tracking(instrument_id):
        return _unknown(instrument_id)
    feed = _engine_manager.feed
    if not isinstance(feed, AggregatedFeed):
        return {"error": "Market data needs FEED_PROVIDER=aggregate"}
    try:
        market = await feed.get_market_data(instrument_id)
    except FeedUnavailable as exc:
        return {"error": str(exc)}
    return market.to_dict()


@router.get("/positions")
async def get_positions():
    """Return open positions with unrealised profit at the latest price."""
    if _engine_manager is None:
        return {"positions": []}
    result = []
    for p in _engine_manager.strategy.open_positions():
        current = _engine_manager.store.current_price(p.instrument_id)
        data = p.to_dict()
        data["current_price"] = current
        data["unrealized_profit"] = (
            round((current - p.entry_price) * p.quantity, 6) if current else None
        )
        result.append(data)
    return {"positions": result}


@router.get("/stats")
async def get_stats():
    """Return the performance ledger snapshot and account state."""
    if _engine_manager is None:
        return {"stats": None, "account": None}
    return {
        "stats": _engine_manager.strategy.stats().to_dict(),
        "account": _engine_manager.strategy.account.to_dict(),
    }


@router.get("/signals/history")
async def get_signal_history(
    limit: int = Query(default=20, ge=1, le=50),
):
    """Return recent cycle outcomes, newest first."""
    if _engine_manager is None:
        return {"signals": []}
    recent = _engine_manager.signal_log[-limit:]
    recent.reverse()  # newest first
    return {"signals": recent}


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    instrument: Optional[str] = Query(default=None),
):
    """Return recent trade journal entries."""
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(
        limit=limit, status_filter=status, instrument_id=instrument,
    )


@router.get("/alerts")
async def get_alerts(instrument: Optional[str] = Query(default=None)):
    """Return pending price alerts."""
    if _engine_manager is None:
        return {"alerts": []}
    return {
        "alerts": [
            {
                "alert_id": a.alert_id,
                "instrument_id": a.instrument_id,
                "condition": a.condition,
                "price": a.price,
            }
            for a in _engine_manager.alerts.active_alerts(instrument)
        ]
    }


@router.post("/alerts")
async def post_alert(body: dict):
    """Create a one-shot price alert.

    Expects ``{"instrument_id": "...", "condition": "above"|"below", "price": float}``.
    """
    errors = []
    instrument_id = body.get("instrument_id")
    condition = body.get("condition")
    price = None

    if not isinstance(instrument_id, str) or not instrument_id:
        errors.append("instrument_id is required")
    if condition not in ("above", "below"):
        errors.append("condition must be 'above' or 'below'")
    try:
        price = float(body.get("price"))
    except (TypeError, ValueError):
        errors.append("price must be a number")
    else:
        if not math.isfinite(price) or price <= 0:
            errors.append("price must be positive")
    if errors:
        return {"status": "error", "errors": errors}

    if _engine_manager is None:
        return {"status": "error", "errors": ["engine not running"]}
    if not _engine_manager.store.is_tracking(instrument_id):
        return {"status": "error", "errors": [f"Unknown instrument: {instrument_id}"]}

    alert_id = _engine_manager.create_price_alert(instrument_id, condition, price)
    logger.info("Alert %s created via API", alert_id)
    return {"status": "ok", "alert_id": alert_id}
