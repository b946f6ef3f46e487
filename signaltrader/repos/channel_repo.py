"""Channel repository — SQLite persistence for channel records."""

from datetime import datetime, timezone

from signaltrader.repos.db import get_connection
from signaltrader.signals.confidence import ChannelPerformance, ChannelRecord


class ChannelRepo:
    """Data access layer for ``ChannelRecord`` snapshots.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def save(self, records: list[ChannelRecord]) -> int:
        """Upsert every record and return how many were written."""
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (
                r.channel_id, r.name, r.broker, r.min_confidence,
                int(r.martingale_enabled),
                r.performance.total_count, r.performance.success_count,
                r.performance.average_confidence, r.performance.last_signal_at,
                r.performance.realized_trades, r.performance.realized_wins,
                r.performance.realized_pnl, now,
            )
            for r in records
        ]
        conn = get_connection(self._db_path)
        try:
            conn.executemany(
                """
                INSERT INTO channels
                    (channel_id, name, broker, min_confidence, martingale_enabled,
                     total_count, success_count, average_confidence, last_signal_at,
                     realized_trades, realized_wins, realized_pnl, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    name = excluded.name,
                    broker = excluded.broker,
                    min_confidence = excluded.min_confidence,
                    martingale_enabled = excluded.martingale_enabled,
                    total_count = excluded.total_count,
                    success_count = excluded.success_count,
                    average_confidence = excluded.average_confidence,
                    last_signal_at = excluded.last_signal_at,
                    realized_trades = excluded.realized_trades,
                    realized_wins = excluded.realized_wins,
                    realized_pnl = excluded.realized_pnl,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
            conn.commit()
            return len(rows)
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def load_all(self) -> list[ChannelRecord]:
        """Return every stored channel, ordered by id."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute("SELECT * FROM channels ORDER BY channel_id").fetchall()
        finally:
            conn.close()

        return [
            ChannelRecord(
                channel_id=row["channel_id"],
                name=row["name"],
                broker=row["broker"],
                min_confidence=row["min_confidence"],
                martingale_enabled=bool(row["martingale_enabled"]),
                performance=ChannelPerformance(
                    total_count=row["total_count"],
                    success_count=row["success_count"],
                    average_confidence=row["average_confidence"],
                    last_signal_at=row["last_signal_at"],
                    realized_trades=row["realized_trades"],
                    realized_wins=row["realized_wins"],
                    realized_pnl=row["realized_pnl"],
                ),
            )
            for row in rows
        ]
