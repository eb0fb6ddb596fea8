"""Sync engine for the offline-first journal.

Provides the delta sync protocol (pull, merge, chunked push) and the
scheduler that decides when rounds run.
"""

from .scheduler import SchedulerState, SyncScheduler
from .sync_client import SyncClient, SyncOutcome, SyncStatus, chunk_entries

__all__ = [
    "SchedulerState",
    "SyncClient",
    "SyncOutcome",
    "SyncScheduler",
    "SyncStatus",
    "chunk_entries",
]
