"""Server-side SQLite storage for synced journal entries."""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from ..storage import Entry, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SERVER_SCHEMA = """
CREATE TABLE IF NOT EXISTS journal_entries (
    date TEXT PRIMARY KEY,
    year INTEGER NOT NULL,
    message TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_journal_timestamp ON journal_entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_journal_year ON journal_entries(year);
"""


class ServerStore:
    """Durable store behind the sync endpoint.

    Pushed entries are upserted as received; the client has already done
    the timestamp comparison before deciding what to push.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the server store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SERVER_SCHEMA)
        self._conn.commit()

        logger.info(f"ServerStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("ServerStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> Entry:
        return Entry(
            date=row["date"],
            message=row["message"],
            timestamp=parse_timestamp(row["timestamp"]),
        )

    def entries_since(self, last_sync: datetime | None) -> list[Entry]:
        """Entries with timestamp strictly after ``last_sync``, or all of them."""
        conn = self._ensure_connected()
        if last_sync is None:
            cursor = conn.execute(
                "SELECT date, message, timestamp FROM journal_entries ORDER BY timestamp ASC"
            )
        else:
            cursor = conn.execute(
                """
                SELECT date, message, timestamp
                FROM journal_entries
                WHERE timestamp > ?
                ORDER BY timestamp ASC
                """,
                (format_timestamp(last_sync),),
            )
        return [self._row_to_entry(row) for row in cursor]

    def upsert(self, entries: Iterable[Entry]) -> int:
        """Write a batch of entries in one transaction, unconditionally.

        Returns:
            Number of entries written.
        """
        batch = list(entries)
        if not batch:
            return 0

        now = format_timestamp(utcnow())
        conn = self._ensure_connected()
        with conn:
            conn.executemany(
                """
                INSERT INTO journal_entries (date, year, message, timestamp, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    year = excluded.year,
                    message = excluded.message,
                    timestamp = excluded.timestamp,
                    updated_at = excluded.updated_at
                """,
                [
                    (e.date, e.year, e.message, format_timestamp(e.timestamp), now)
                    for e in batch
                ],
            )

        logger.debug(f"Upserted {len(batch)} entries")
        return len(batch)

    def get(self, date: str) -> Entry | None:
        """Look up one record, tombstones included."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT date, message, timestamp FROM journal_entries WHERE date = ?",
            (date,),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def visible_entries(self) -> list[Entry]:
        """Non-tombstone entries, newest date first."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT date, message, timestamp
            FROM journal_entries
            WHERE message != ''
            ORDER BY date DESC
            """
        )
        return [self._row_to_entry(row) for row in cursor]

    def all(self) -> list[Entry]:
        """Every record, tombstones included, ordered by date."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT date, message, timestamp FROM journal_entries ORDER BY date ASC"
        )
        return [self._row_to_entry(row) for row in cursor]

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        conn = self._ensure_connected()
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN message = '' THEN 1 ELSE 0 END) AS tombstones
            FROM journal_entries
            """
        ).fetchone()
        tombstones = row["tombstones"] or 0
        return {
            "total_records": row["total"],
            "entries_count": row["total"] - tombstones,
            "tombstones_count": tombstones,
        }
