"""Database initialization and connection management.

Creates the trade journal schema on first boot, provides connection factory.
"""

import pathlib
import sqlite3


_SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    mode              TEXT    NOT NULL,
    instrument_id     TEXT    NOT NULL,
    entry_price       REAL    NOT NULL,
    quantity          REAL    NOT NULL,
    stop_loss         REAL    NOT NULL,
    take_profit       REAL    NOT NULL,
    capital_committed REAL    NOT NULL,
    entry_reason      TEXT,
    opened_at         TEXT    NOT NULL,
    exit_price        REAL,
    exit_reason       TEXT,
    profit            REAL,
    status            TEXT    NOT NULL DEFAULT 'open',
    closed_at         TEXT
);

CREATE INDEX IF NOT EXISTS idx_trades_instrument ON trades (instrument_id);
CREATE INDEX IF NOT EXISTS idx_trades_status ON trades (status);
"""


def init_db(db_path: str) -> None:
    """Initialize the database, creating tables that don't exist yet.

    Args:
        db_path: Path to the SQLite database file.  Parent directories are
                 created as needed.
    """
    if db_path != ":memory:":
        pathlib.Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(_SCHEMA)
    finally:
        conn.close()


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with row-factory enabled.

    Callers are responsible for closing the connection.
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn
