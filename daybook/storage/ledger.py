"""Durable record of the last successful sync."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from .entry import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_state (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL
);
"""

LAST_SYNC_KEY = "lastSync"


class SyncLedger:
    """Single durable scalar: the time of the last fully successful sync.

    Absent until the first successful round. Only ever moves forward.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file, or ":memory:". May be the
                same file as the entry store.
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
        self._conn.executescript(LEDGER_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def read(self) -> datetime | None:
        """Return the last sync time, or None before the first sync."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT timestamp FROM sync_state WHERE id = ?", (LAST_SYNC_KEY,)
        ).fetchone()
        return parse_timestamp(row[0]) if row else None

    def write(self, timestamp: datetime) -> datetime:
        """Durably record a successful sync.

        A value older than the stored one is ignored.

        Returns:
            The ledger value now in effect.
        """
        timestamp = parse_timestamp(timestamp)
        current = self.read()
        if current is not None and timestamp <= current:
            logger.debug(
                f"Ledger not moved backwards ({format_timestamp(timestamp)} "
                f"<= {format_timestamp(current)})"
            )
            return current

        conn = self._ensure_connected()
        with conn:
            conn.execute(
                """
                INSERT INTO sync_state (id, timestamp) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET timestamp = excluded.timestamp
                """,
                (LAST_SYNC_KEY, format_timestamp(timestamp)),
            )

        logger.debug(f"Ledger advanced to {format_timestamp(timestamp)}")
        return timestamp
