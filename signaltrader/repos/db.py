"""Database initialization and connection management.

Creates the schema on first boot, provides connection factory.
"""

import pathlib
import sqlite3


_SCHEMA = """
CREATE TABLE IF NOT EXISTS channels (
    channel_id          TEXT PRIMARY KEY,
    name                TEXT NOT NULL DEFAULT '',
    broker              TEXT,
    min_confidence      REAL NOT NULL DEFAULT 70,
    martingale_enabled  INTEGER NOT NULL DEFAULT 0,
    total_count         INTEGER NOT NULL DEFAULT 0,
    success_count       INTEGER NOT NULL DEFAULT 0,
    average_confidence  REAL NOT NULL DEFAULT 0,
    last_signal_at      REAL,
    realized_trades     INTEGER NOT NULL DEFAULT 0,
    realized_wins       INTEGER NOT NULL DEFAULT 0,
    realized_pnl        REAL NOT NULL DEFAULT 0,
    updated_at          TEXT NOT NULL
);
"""


def init_db(db_path: str) -> None:
    """Create the database file and tables if they do not exist.

    Args:
        db_path: Path to the SQLite database file (or ``":memory:"``).
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
