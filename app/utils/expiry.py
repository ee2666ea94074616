

import re
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta


_EXPIRY_PATTERN = re.compile(r'^(\d+)([HDMY])$')


def parse_expiry(expiry: str) -> relativedelta:
    """
    Parse an expiry string (1H, 7D, 1M, 1Y) into a relative duration.

    Args:
        expiry: Expiry format string (e.g., "12H", "7D", "6M", "2Y").
            Units are case insensitive; M means months.

    Returns:
        relativedelta: Duration to add to a start time.

    Raises:
        ValueError: If expiry format is invalid.
    """
    if not expiry:
        raise ValueError("Expiry string cannot be empty")

    match = _EXPIRY_PATTERN.match(expiry.strip().upper())
    if not match:
        raise ValueError("Invalid expiry format. Use: 1H, 2D, 3M, 4Y")

    amount = int(match.group(1))
    unit = match.group(2)

    if unit == 'H':
        return relativedelta(hours=amount)
    elif unit == 'D':
        return relativedelta(days=amount)
    elif unit == 'M':
        return relativedelta(months=amount)
    return relativedelta(years=amount)


def expiry_from(expiry: str, start: Optional[datetime] = None) -> datetime:
    """
    Compute the absolute expiry time for an expiry string.

    Args:
        expiry: Expiry format string.
        start: Start time, defaults to now (UTC).

    Returns:
        datetime: Timezone-aware expiry datetime in UTC.
    """
    start = start or datetime.now(timezone.utc)
    return start + parse_expiry(expiry)


def validate_expiry_format(expiry: str) -> bool:
    """
    Validate expiry format without converting.

    Args:
        expiry: Expiry format string.

    Returns:
        bool: True if format is valid.
    """
    try:
        parse_expiry(expiry)
        return True
    except ValueError:
        return False
