"""Client-side storage for journal entries.

Provides:
- The Entry record and its fixed-width timestamp format
- A SQLite entry store with a timestamp index for delta queries
- The sync ledger
- JSON export/import for backups
"""

from .backup import ImportValidationError, export_entries, export_json, import_entries, import_json
from .entry import (
    Entry,
    EntryValidationError,
    MonotonicClock,
    format_timestamp,
    parse_timestamp,
    utcnow,
    validate_date,
)
from .ledger import SyncLedger
from .local_store import EntryStore

__all__ = [
    "Entry",
    "EntryStore",
    "EntryValidationError",
    "ImportValidationError",
    "MonotonicClock",
    "SyncLedger",
    "export_entries",
    "export_json",
    "format_timestamp",
    "import_entries",
    "import_json",
    "parse_timestamp",
    "utcnow",
    "validate_date",
]
