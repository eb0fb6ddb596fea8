"""Looking back over the journal: past entries on a date, and missing days."""

from datetime import date, timedelta
from typing import Any

from .storage import validate_date


def on_this_day(current: str, entries: dict[str, str]) -> list[dict[str, Any]]:
    """Entries from earlier years on the same month and day, newest year first.

    Args:
        current: Date key to look back from.
        entries: Visible entries keyed by date.
    """
    day = date.fromisoformat(validate_date(current))

    results = []
    for key, message in entries.items():
        past = date.fromisoformat(key)
        if (past.month, past.day) == (day.month, day.day) and past.year < day.year:
            results.append({"date": key, "message": message, "year": past.year})

    results.sort(key=lambda item: item["year"], reverse=True)
    return results


def start_date(entries: dict[str, str], today: date | None = None) -> str:
    """Date of the first entry, or today for an empty journal."""
    if not entries:
        return (today or date.today()).isoformat()
    return min(entries)


def _missing(first: date, last: date, written: set[date]) -> int:
    if last < first:
        return 0
    days = (last - first).days + 1
    return days - sum(1 for d in written if first <= d <= last)


def catchup_counts(
    current: str,
    entries: dict[str, str],
    start: str | None = None,
    today: date | None = None,
) -> dict[str, int]:
    """Count days without an entry around ``current``.

    ``previous`` covers the days from ``start`` (the first entry by default)
    up to the day before ``current``. ``next`` covers the day after
    ``current`` up to today.

    Returns:
        Dictionary with ``previous`` and ``next`` counts.
    """
    today = today or date.today()
    day = date.fromisoformat(validate_date(current))
    first = date.fromisoformat(validate_date(start or start_date(entries, today)))
    written = {date.fromisoformat(key) for key in entries}

    return {
        "previous": _missing(first, day - timedelta(days=1), written),
        "next": _missing(day + timedelta(days=1), today, written),
    }
