"""JSON export and import of journal entries."""

import json
import logging
from pathlib import Path
from typing import Any

from .entry import Entry, EntryValidationError, validate_date
from .local_store import EntryStore

logger = logging.getLogger(__name__)


class ImportValidationError(ValueError):
    """Raised when import data is malformed. Nothing has been written."""


def export_entries(store: EntryStore) -> list[dict[str, Any]]:
    """Every stored record as ``{date, message, timestamp}``, tombstones included."""
    return [entry.to_dict() for entry in store.all()]


def export_json(store: EntryStore, path: str | Path | None = None) -> str:
    """Serialize the store as a JSON array, optionally writing it to ``path``."""
    text = json.dumps(export_entries(store), indent=2, ensure_ascii=False)
    if path is not None:
        Path(path).expanduser().write_text(text + "\n", encoding="utf-8")
        logger.info(f"Exported entries to {path}")
    return text


def _validate(data: Any) -> list[tuple[str, str]]:
    if not isinstance(data, list):
        raise ImportValidationError("Import data must be a JSON array of entries")

    items: list[tuple[str, str]] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ImportValidationError(f"Item {index} is not an object")
        try:
            date = validate_date(item.get("date"))
        except EntryValidationError as e:
            raise ImportValidationError(f"Item {index}: {e}") from e
        message = item.get("message")
        if not isinstance(message, str):
            raise ImportValidationError(f"Item {index} ({date}): message must be a string")
        items.append((date, message))
    return items


def import_entries(store: EntryStore, data: Any) -> dict[str, str]:
    """Validate and import a list of ``{date, message[, timestamp]}`` items.

    The whole document is checked before the store is touched, then written
    as a single batch with freshly issued timestamps so the imported entries
    are picked up by the next sync. When a date appears more than once the
    last occurrence wins.

    Returns:
        Date to message mapping of what was imported.

    Raises:
        ImportValidationError: If any item is malformed.
    """
    items = _validate(data)

    latest: dict[str, str] = {}
    for date, message in items:
        latest.pop(date, None)
        latest[date] = message

    store.put_all(
        Entry(date=date, message=message, timestamp=store.now())
        for date, message in latest.items()
    )
    logger.info(f"Imported {len(latest)} entries")
    return latest


def import_json(store: EntryStore, source: str | Path) -> dict[str, str]:
    """Import entries from a JSON file.

    Raises:
        ImportValidationError: If the file is not valid JSON or any item is malformed.
    """
    text = Path(source).expanduser().read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ImportValidationError(f"Invalid JSON: {e}") from e
    return import_entries(store, data)
