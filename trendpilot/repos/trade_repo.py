"""Trade repository — SQLite journal of entries and exits."""

from datetime import datetime, timezone
from typing import Optional

from trendpilot.repos.db import get_connection
from trendpilot.strategy.models import ClosedTrade, Position


class TradeRepo:
    """Data access layer for trade records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_trade(
        self,
        mode: str,
        position: Position,
        entry_reason: str,
    ) -> int:
        """Insert a new open trade and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (mode, instrument_id, entry_price, quantity, stop_loss,
                     take_profit, capital_committed, entry_reason, opened_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mode,
                    position.instrument_id,
                    position.entry_price,
                    position.quantity,
                    position.stop_loss_price,
                    position.take_profit_price,
                    position.capital_committed,
                    entry_reason,
                    position.opened_at.isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def close_trade(self, trade_id: int, trade: ClosedTrade) -> None:
        """Close an open trade by setting exit fields."""
        closed_at = (trade.closed_at or datetime.now(timezone.utc)).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE trades
                SET exit_price = ?, exit_reason = ?, profit = ?,
                    status = 'closed', closed_at = ?
                WHERE id = ?
                """,
                (trade.exit_price, trade.reason, trade.profit, closed_at, trade_id),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 20,
        status_filter: Optional[str] = None,
        instrument_id: Optional[str] = None,
    ) -> dict:
        """Return recent trades, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if status_filter:
                conditions.append("status = ?")
                params.append(status_filter)
            if instrument_id:
                conditions.append("instrument_id = ?")
                params.append(instrument_id)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            trades = [dict(row) for row in rows]
            return {"trades": trades, "total": total}
        finally:
            conn.close()
