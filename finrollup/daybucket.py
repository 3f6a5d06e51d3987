"""
Timezone day bucketing.

Converts absolute instants to organization-local calendar days and groups
records by day. Client-side bucketing must land on the same days as the
source's SQL (`timestamp AT TIME ZONE 'UTC' AT TIME ZONE tz`), so every
caller in one reconciliation pass passes the same timezone explicitly.

Usage:
    from finrollup.daybucket import day_key, bucket_by_day

    day_key("2025-01-15T02:00:00Z", "America/New_York")  # "2025-01-14"
    buckets = bucket_by_day(transactions, lambda t: t.occurred_at, tz)
"""
import re
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from finrollup.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Returned instead of raising when a timestamp or timezone cannot be used
INVALID_DAY = "invalid"

_HOUR_OFFSET = re.compile(r"\d{2}:\d{2}(:\d{2}(\.\d+)?)?[+-]\d{2}$")


@lru_cache(maxsize=64)
def get_zone(name: str) -> Optional[ZoneInfo]:
    """Cached ZoneInfo lookup; None for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an absolute instant into an aware datetime.

    Accepts aware/naive datetimes, ISO-8601 strings (with 'Z', an offset,
    or no offset) and epoch seconds. Values without an offset are taken
    as UTC, which is how the source stores transaction timestamps.

    Returns:
        Aware datetime, or None if the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        # Postgres may emit an hour-only offset: "2025-01-15 02:00:00+00"
        if _HOUR_OFFSET.search(text):
            text = text + ":00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def day_key(timestamp: Any, tz_name: str) -> str:
    """
    Convert an absolute instant to a YYYY-MM-DD key in the given timezone.

    Never raises: returns INVALID_DAY for unparseable timestamps or
    unknown timezones so callers can skip the entry and carry on.

    Args:
        timestamp: datetime, ISO string or epoch seconds
        tz_name: IANA timezone name, e.g. "America/New_York"

    Returns:
        Calendar day string, or INVALID_DAY
    """
    zone = get_zone(tz_name)
    if zone is None:
        return INVALID_DAY

    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return INVALID_DAY

    try:
        return parsed.astimezone(zone).date().isoformat()
    except (OverflowError, ValueError):
        return INVALID_DAY


def bucket_by_day(
    records: Iterable[T],
    key_extractor: Callable[[T], Any],
    tz_name: str,
) -> Dict[str, List[T]]:
    """
    Group records into organization-local day buckets.

    Records whose timestamp maps to INVALID_DAY are skipped. Buckets keep
    input order, so repeated calls on the same input produce identical
    key sets and member counts.

    Args:
        records: Records to group
        key_extractor: Returns the absolute timestamp of a record
        tz_name: IANA timezone name used for every record

    Returns:
        Dict of day key -> records on that day
    """
    buckets: Dict[str, List[T]] = defaultdict(list)
    skipped = 0

    for record in records:
        key = day_key(key_extractor(record), tz_name)
        if key == INVALID_DAY:
            skipped += 1
            continue
        buckets[key].append(record)

    if skipped:
        logger.debug(
            f"Skipped {skipped} records with invalid timestamps",
            extra={"timezone": tz_name, "skipped": skipped}
        )

    return dict(buckets)


def local_day_bounds(start: date, end: date, tz_name: str) -> Tuple[datetime, datetime]:
    """
    UTC instants spanning local midnight of `start` to end-of-day of `end`.

    Used to read raw transactions on the same day boundaries the rollup
    uses. For America/New_York in January, 2026-01-22 starts at
    2026-01-22T05:00:00Z.

    Raises:
        ValueError: If the timezone is unknown
    """
    zone = get_zone(tz_name)
    if zone is None:
        raise ValueError(f"Unknown timezone: {tz_name}")

    local_start = datetime.combine(start, time.min, tzinfo=zone)
    local_end = datetime.combine(end + timedelta(days=1), time.min, tzinfo=zone)

    utc_start = local_start.astimezone(timezone.utc)
    utc_end = local_end.astimezone(timezone.utc) - timedelta(microseconds=1)
    return utc_start, utc_end
