"""
Date range utilities: inclusive ranges, previous-period math, day iteration.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, List


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar date range in organization-local days."""
    start: date
    end: date

    @property
    def start_str(self) -> str:
        """Start date as YYYY-MM-DD string."""
        return self.start.isoformat()

    @property
    def end_str(self) -> str:
        """End date as YYYY-MM-DD string."""
        return self.end.isoformat()

    @property
    def days(self) -> int:
        """Number of calendar days in the range (inclusive)."""
        return (self.end - self.start).days + 1

    def previous(self) -> "DateRange":
        """
        The immediately preceding range of equal length.

        Examples:
            >>> DateRange(date(2025, 1, 8), date(2025, 1, 14)).previous()
            DateRange(start=datetime.date(2025, 1, 1), end=datetime.date(2025, 1, 7))
        """
        prev_end = self.start - timedelta(days=1)
        prev_start = prev_end - (self.end - self.start)
        return DateRange(prev_start, prev_end)

    def iter_days(self) -> Iterator[date]:
        """Yield every calendar day in the range, inclusive."""
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def day_keys(self) -> List[str]:
        """Every day in the range as YYYY-MM-DD keys."""
        return [d.isoformat() for d in self.iter_days()]


def day_label(day_key: str) -> str:
    """Short chart label for a YYYY-MM-DD key, e.g. 'Jan 5'."""
    d = date.fromisoformat(day_key)
    return f"{d.strftime('%b')} {d.day}"
