"""Journal entry record and timestamp handling.

Timestamps are timezone-aware UTC datetimes in memory. On disk and on the
wire they are always rendered in one fixed-width form so that lexicographic
order of the strings equals chronological order.
"""

import re
from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime, timedelta, timezone
from typing import Any

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class EntryValidationError(ValueError):
    """Raised when an entry or one of its fields is malformed."""


def utcnow() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """Render a timestamp in the fixed-width storage/wire format.

    Always 27 characters, e.g. ``2024-01-01T12:30:45.123456Z``.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    utc = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return utc.isoformat(timespec="microseconds") + "Z"


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z``, millisecond precision and explicit offsets.
    Naive values are taken to be UTC.

    Raises:
        EntryValidationError: If the value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as e:
            raise EntryValidationError(f"Invalid timestamp: {value!r}") from e
    else:
        raise EntryValidationError(f"Invalid timestamp: {value!r}")

    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def validate_date(value: Any) -> str:
    """Check that a date key is a real calendar date in YYYY-MM-DD form.

    Returns:
        The date key unchanged.

    Raises:
        EntryValidationError: If the key is malformed.
    """
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise EntryValidationError(f"Date must be in YYYY-MM-DD format: {value!r}")
    try:
        date_type.fromisoformat(value)
    except ValueError as e:
        raise EntryValidationError(f"Not a calendar date: {value!r}") from e
    return value


@dataclass(frozen=True)
class Entry:
    """One journal entry, keyed by its date.

    An empty message is a tombstone: the entry was deleted as of
    ``timestamp``. Tombstones are stored and synced like any other entry.
    """

    date: str
    message: str
    timestamp: datetime

    def __post_init__(self) -> None:
        validate_date(self.date)
        if not isinstance(self.message, str):
            raise EntryValidationError(f"Message must be a string for {self.date}")
        # Normalise so equality and ordering never depend on the offset used
        object.__setattr__(self, "timestamp", parse_timestamp(self.timestamp))

    @property
    def is_tombstone(self) -> bool:
        return self.message == ""

    @property
    def year(self) -> int:
        return int(self.date[:4])

    def supersedes(self, other: "Entry | None") -> bool:
        """Last-write-wins: True if this entry is strictly newer than ``other``.

        A missing entry counts as infinitely old. Equal timestamps do not
        supersede.
        """
        if other is None:
            return True
        return self.timestamp > other.timestamp

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire/export representation."""
        return {
            "date": self.date,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entry":
        """Create from the wire/export representation.

        Raises:
            EntryValidationError: If a field is missing or malformed.
        """
        if not isinstance(data, dict):
            raise EntryValidationError(f"Entry must be an object, got {type(data).__name__}")
        for key in ("date", "message", "timestamp"):
            if key not in data or data[key] is None:
                raise EntryValidationError(f"Entry is missing '{key}'")
        return cls(
            date=data["date"],
            message=data["message"],
            timestamp=parse_timestamp(data["timestamp"]),
        )


class MonotonicClock:
    """Issues strictly increasing UTC timestamps.

    Successive calls never return the same or an earlier value, even if the
    wall clock stalls or steps backwards.
    """

    def __init__(self, last: datetime | None = None):
        self._last = last

    def observe(self, ts: datetime) -> None:
        """Make sure later timestamps come after ``ts``."""
        if self._last is None or ts > self._last:
            self._last = ts

    def now(self) -> datetime:
        ts = utcnow()
        if self._last is not None and ts <= self._last:
            ts = self._last + timedelta(microseconds=1)
        self._last = ts
        return ts
