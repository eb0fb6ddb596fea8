"""Client-side journal: local store plus background sync."""

import asyncio
import logging
from datetime import date
from pathlib import Path
from typing import Any

from .config import Config
from .history import catchup_counts, on_this_day
from .storage import (
    Entry,
    EntryStore,
    SyncLedger,
    export_json,
    import_entries,
    import_json,
)
from .sync import SyncClient, SyncOutcome, SyncScheduler

logger = logging.getLogger(__name__)


class Journal:
    """Coordinates the entry store, the sync ledger and the sync scheduler.

    Every local mutation goes through the store's batch write and then
    notifies the scheduler, which debounces a sync round.
    """

    def __init__(
        self,
        config: Config,
        store: EntryStore | None = None,
        ledger: SyncLedger | None = None,
        client: SyncClient | None = None,
    ):
        self.config = config
        self._running = False

        self.store = store or EntryStore(config.client.db_path)
        self.ledger = ledger or SyncLedger(config.client.db_path)

        self.client = client or SyncClient(
            store=self.store,
            ledger=self.ledger,
            server_url=config.sync.server_url,
            chunk_size=config.sync.chunk_size,
            max_retries=config.sync.retry_max_attempts,
            timeout=config.sync.timeout_seconds,
        )
        self.scheduler = SyncScheduler(
            self.client,
            debounce_seconds=config.sync.debounce_seconds,
            startup_delay_seconds=config.sync.startup_delay_seconds,
            base_interval_seconds=config.sync.base_interval_seconds,
            max_interval_seconds=config.sync.max_interval_seconds,
        )

    async def start(self) -> None:
        """Open storage and, if enabled, start background sync."""
        self.store.connect()
        self.ledger.connect()
        self._running = True

        if self.config.sync.enabled:
            await self.scheduler.start()
        else:
            logger.info("Sync disabled, running offline only")

    async def stop(self) -> None:
        """Stop background sync and close storage."""
        if self._running and self.config.sync.enabled:
            await self.scheduler.stop()
        self._running = False

        await self.client.close()
        self.ledger.close()
        self.store.close()

    def _after_change(self) -> None:
        if self._running and self.config.sync.enabled:
            self.scheduler.notify_change()

    # ==================== Entries ====================

    def write(self, date: str, message: str) -> Entry:
        """Save the entry for a date. An empty message deletes it."""
        with self.scheduler.local_save():
            entry = self.store.save_entry(date, message)
        self._after_change()
        return entry

    def delete(self, date: str) -> Entry:
        """Delete the entry for a date by writing a tombstone."""
        with self.scheduler.local_save():
            entry = self.store.delete_entry(date)
        self._after_change()
        return entry

    def read(self, date: str) -> str | None:
        """Message for a date, or None if absent or deleted."""
        entry = self.store.get(date)
        if entry is None or entry.is_tombstone:
            return None
        return entry.message

    def entries(self) -> dict[str, str]:
        """Every visible entry, keyed by date."""
        return self.store.visible_entries()

    def on_this_day(self, day: str | None = None, today: date | None = None) -> list[dict[str, Any]]:
        """Entries from earlier years on the same month and day as ``day`` (default today)."""
        day = day or (today or date.today()).isoformat()
        return on_this_day(day, self.store.visible_entries())

    def catchup_counts(self, day: str | None = None, today: date | None = None) -> dict[str, int]:
        """Days without an entry before and after ``day`` (default today)."""
        today = today or date.today()
        return catchup_counts(day or today.isoformat(), self.store.visible_entries(), today=today)

    # ==================== Backup ====================

    def export_data(self, path: str | Path | None = None) -> str:
        """Export all records as JSON, optionally to a file."""
        return export_json(self.store, path)

    def import_data(self, data: Any) -> dict[str, str]:
        """Import already-parsed JSON data. Nothing is written if it is invalid."""
        with self.scheduler.local_save():
            imported = import_entries(self.store, data)
        self._after_change()
        return imported

    def import_file(self, path: str | Path) -> dict[str, str]:
        """Import entries from a JSON file. Nothing is written if it is invalid."""
        with self.scheduler.local_save():
            imported = import_json(self.store, path)
        self._after_change()
        return imported

    # ==================== Sync ====================

    async def sync_now(self) -> SyncOutcome | None:
        """Run a sync round now, unless one is already in flight."""
        return await self.scheduler.trigger("manual")

    def get_status(self) -> dict[str, Any]:
        """Store and sync status for display."""
        status = self.client.get_sync_status()
        status.update(self.store.get_stats())
        status["scheduler_state"] = self.scheduler.state.value
        status["unsynced_changes"] = self.scheduler.dirty or status["pending_entries"] > 0
        status["sync_interval_seconds"] = self.scheduler.interval
        return status


async def run_client(config: Config) -> None:
    """Keep the journal syncing in the background until interrupted.

    Args:
        config: Configuration for the client.
    """
    journal = Journal(config)

    try:
        await journal.start()
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await journal.stop()
