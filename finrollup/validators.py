"""
Input validation for report requests.

All validators raise ValidationError on invalid input.
"""
import re
from datetime import date, datetime
from typing import Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from finrollup.exceptions import ValidationError

# Maximum allowed values
MAX_RANGE_DAYS = 366
MAX_FILTER_ID_LENGTH = 128

# Campaign/creative ids are platform ids or uuids; no whitespace or quoting
_FILTER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+$")


def validate_date_string(
    value: Union[str, date],
    field: str = "date",
    format: str = "%Y-%m-%d"
) -> date:
    """
    Validate and parse a calendar date.

    Args:
        value: Date string (or an existing date, returned unchanged)
        field: Field name for error messages
        format: Expected date format (default: YYYY-MM-DD)

    Returns:
        Parsed date object

    Raises:
        ValidationError: If date is missing, not a string or malformed
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    if not value:
        raise ValidationError(field, "Date is required", value)

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    try:
        return datetime.strptime(value, format).date()
    except ValueError:
        raise ValidationError(field, f"Invalid date format. Expected {format}", value)


def validate_date_range(
    start_date: Union[str, date],
    end_date: Union[str, date],
    max_days: Optional[int] = MAX_RANGE_DAYS
) -> Tuple[date, date]:
    """
    Validate an inclusive date range.

    Args:
        start_date: Start date (YYYY-MM-DD or date)
        end_date: End date (YYYY-MM-DD or date)
        max_days: Maximum allowed range length in days (None: no cap)

    Returns:
        Tuple of (start_date, end_date) as date objects

    Raises:
        ValidationError: If dates are invalid or range is too large
    """
    start = validate_date_string(start_date, "start_date")
    end = validate_date_string(end_date, "end_date")

    if start > end:
        raise ValidationError(
            "date_range",
            "Start date must be before or equal to end date",
            f"{start} to {end}"
        )

    days = (end - start).days + 1
    if max_days is not None and days > max_days:
        raise ValidationError(
            "date_range",
            f"Date range cannot exceed {max_days} days",
            f"{days} days"
        )

    return start, end


def validate_timezone(value: Optional[str], field: str = "timezone") -> str:
    """
    Validate an IANA timezone name.

    Raises:
        ValidationError: If the name is empty or unknown
    """
    if not value or not isinstance(value, str):
        raise ValidationError(field, "Timezone is required", value)

    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(field, "Unknown IANA timezone", value)

    return value


def validate_org_id(value: Optional[str], field: str = "organization_id") -> str:
    """Validate an organization id (non-empty string)."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "Organization ID is required", value)
    return value.strip()


def validate_filter_id(value: Optional[str], field: str) -> Optional[str]:
    """
    Validate an optional campaign/creative filter id.

    Empty strings are treated as "no filter".

    Returns:
        Stripped id, or None when no filter was given
    """
    if value is None:
        return None

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    value = value.strip()
    if not value:
        return None

    if len(value) > MAX_FILTER_ID_LENGTH:
        raise ValidationError(field, f"Cannot exceed {MAX_FILTER_ID_LENGTH} characters", len(value))

    if not _FILTER_ID_PATTERN.match(value):
        raise ValidationError(field, "Contains invalid characters", value)

    return value
