"""Local SQLite storage for journal entries."""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from .entry import Entry, MonotonicClock, format_timestamp, parse_timestamp, validate_date

logger = logging.getLogger(__name__)

# One row per date; deletions are tombstones (empty message), never DELETEs.
# `local` is 1 for rows written on this device, 0 for rows taken from a pull.
SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    date TEXT PRIMARY KEY,
    message TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    local INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_entries_timestamp ON entries(timestamp);
"""


class EntryStore:
    """Durable key-value store of journal entries keyed by date.

    Every write, single or batched, goes through :meth:`put_all` so that a
    batch is committed as one transaction or not at all.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the entry store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._clock = MonotonicClock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        # Never issue a timestamp older than one already stored
        row = self._conn.execute("SELECT MAX(timestamp) FROM entries").fetchone()
        if row[0] is not None:
            self._clock.observe(parse_timestamp(row[0]))

        logger.info(f"EntryStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("EntryStore connection closed")

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

    def now(self) -> datetime:
        """Next write timestamp, strictly after every timestamp seen so far."""
        return self._clock.now()

    # ==================== Key-value contract ====================

    def get(self, date: str) -> Entry | None:
        """Look up the entry for a date, tombstones included."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT date, message, timestamp FROM entries WHERE date = ?",
            (date,),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def put(self, entry: Entry, local: bool = True) -> None:
        """Upsert a single entry. Call order decides, not timestamps."""
        self.put_all([entry], local=local)

    def put_all(self, entries: Iterable[Entry], local: bool = True) -> int:
        """Upsert a batch of entries atomically.

        Either every entry is durably written or, if anything fails, none is.

        Args:
            entries: Entries to write.
            local: False when the entries come from the server, so they are
                never offered back to it as local changes.

        Returns:
            Number of entries written.
        """
        batch = list(entries)
        if not batch:
            return 0

        origin = 1 if local else 0
        conn = self._ensure_connected()
        with conn:
            conn.executemany(
                """
                INSERT INTO entries (date, message, timestamp, local)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    message = excluded.message,
                    timestamp = excluded.timestamp,
                    local = excluded.local
                """,
                [(e.date, e.message, format_timestamp(e.timestamp), origin) for e in batch],
            )

        for entry in batch:
            self._clock.observe(entry.timestamp)

        logger.debug(f"Wrote {len(batch)} entries")
        return len(batch)

    def all_modified_since(self, since: datetime) -> list[Entry]:
        """Entries with a timestamp strictly after ``since``, oldest first.

        Served by the timestamp index; relies on the fixed-width format.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT date, message, timestamp
            FROM entries
            WHERE timestamp > ?
            ORDER BY timestamp ASC
            """,
            (format_timestamp(since),),
        )
        return [self._row_to_entry(row) for row in cursor]

    def local_changes_since(self, since: datetime | None) -> list[Entry]:
        """Entries written on this device after ``since`` (all if None), oldest first.

        Rows taken from a pull are left out even when their timestamp is
        later than ``since``.
        """
        conn = self._ensure_connected()
        if since is None:
            cursor = conn.execute(
                """
                SELECT date, message, timestamp
                FROM entries
                WHERE local = 1
                ORDER BY timestamp ASC
                """
            )
        else:
            cursor = conn.execute(
                """
                SELECT date, message, timestamp
                FROM entries
                WHERE timestamp > ? AND local = 1
                ORDER BY timestamp ASC
                """,
                (format_timestamp(since),),
            )
        return [self._row_to_entry(row) for row in cursor]

    def all(self) -> list[Entry]:
        """Every stored entry, tombstones included, ordered by date."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT date, message, timestamp FROM entries ORDER BY date ASC"
        )
        return [self._row_to_entry(row) for row in cursor]

    # ==================== Journal operations ====================

    def save_entry(self, date: str, message: str) -> Entry:
        """Write a local edit stamped with a fresh timestamp.

        Saving an empty message is the same as deleting the entry.
        """
        entry = Entry(date=validate_date(date), message=message, timestamp=self.now())
        self.put(entry)
        return entry

    def delete_entry(self, date: str) -> Entry:
        """Tombstone the entry for a date."""
        return self.save_entry(date, "")

    def visible_entries(self) -> dict[str, str]:
        """Date to message mapping with tombstones filtered out."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT date, message FROM entries WHERE message != '' ORDER BY date ASC"
        )
        return {row["date"]: row["message"] for row in cursor}

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with entry counts and the newest timestamp.
        """
        conn = self._ensure_connected()

        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN message = '' THEN 1 ELSE 0 END) AS tombstones,
                MAX(timestamp) AS latest
            FROM entries
            """
        ).fetchone()

        total = row["total"]
        tombstones = row["tombstones"] or 0
        stats = {
            "total_records": total,
            "entries_count": total - tombstones,
            "tombstones_count": tombstones,
            "latest_timestamp": row["latest"],
        }

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
