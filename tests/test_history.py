"""Tests for on-this-day lookups and catch-up counts."""

import pytest
from datetime import date

from daybook.history import catchup_counts, on_this_day, start_date
from daybook.storage import EntryValidationError


class TestOnThisDay:
    """Tests for on_this_day."""

    def test_earlier_years_newest_first(self):
        entries = {
            "2021-03-05": "three years ago",
            "2023-03-05": "last year",
            "2022-03-05": "two years ago",
            "2024-03-05": "today",
            "2023-03-06": "wrong day",
            "2023-04-05": "wrong month",
        }

        result = on_this_day("2024-03-05", entries)

        assert [item["year"] for item in result] == [2023, 2022, 2021]
        assert result[0] == {"date": "2023-03-05", "message": "last year", "year": 2023}

    def test_later_years_excluded(self):
        entries = {"2025-03-05": "future"}

        assert on_this_day("2024-03-05", entries) == []

    def test_leap_day(self):
        entries = {"2020-02-29": "leap", "2023-02-28": "not leap"}

        assert [item["date"] for item in on_this_day("2024-02-29", entries)] == ["2020-02-29"]

    def test_invalid_date(self):
        with pytest.raises(EntryValidationError):
            on_this_day("03-05", {})


class TestCatchupCounts:
    """Tests for catchup_counts."""

    def test_start_date(self):
        entries = {"2024-01-05": "b", "2024-01-02": "a"}

        assert start_date(entries) == "2024-01-02"
        assert start_date({}, today=date(2024, 6, 1)) == "2024-06-01"

    def test_counts_missing_days_both_ways(self):
        entries = {"2024-01-01": "a", "2024-01-03": "b", "2024-01-05": "c", "2024-01-08": "d"}

        counts = catchup_counts("2024-01-05", entries, today=date(2024, 1, 10))

        # Missing before: 01-02, 01-04. After: 01-06, 01-07, 01-09, 01-10
        assert counts == {"previous": 2, "next": 4}

    def test_today_has_nothing_after(self):
        entries = {"2024-01-01": "a"}

        counts = catchup_counts("2024-01-04", entries, today=date(2024, 1, 4))

        assert counts == {"previous": 2, "next": 0}

    def test_first_entry_has_nothing_before(self):
        entries = {"2024-01-01": "a", "2024-01-02": "b"}

        counts = catchup_counts("2024-01-01", entries, today=date(2024, 1, 2))

        assert counts == {"previous": 0, "next": 0}

    def test_empty_journal(self):
        counts = catchup_counts("2024-01-01", {}, today=date(2024, 1, 3))

        assert counts == {"previous": 0, "next": 2}

    def test_explicit_start(self):
        counts = catchup_counts(
            "2024-01-10", {}, start="2024-01-01", today=date(2024, 1, 10)
        )

        assert counts == {"previous": 9, "next": 0}
