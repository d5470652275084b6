"""ISO 8601 duration parsing for trial and grace periods.

Only the simple forms used in billing configuration are accepted:
P[n]D, P[n]W, P[n]M and P[n]Y. Months count as 30 days and years as
365 days, the usual billing approximation.
"""

import re
from datetime import timedelta

DAYS_PER_UNIT = {
    "D": 1,
    "W": 7,
    "M": 30,
    "Y": 365,
}

_PERIOD_PATTERN = re.compile(r"^P(\d+)?([DWMY])$")


def parse_billing_period(period: str) -> int:
    """Parse an ISO 8601 duration string into a number of days.

    Args:
        period: Duration string (e.g., "P7D", "P1M")

    Returns:
        Duration in whole days

    Raises:
        ValueError: If the period string is invalid or unsupported

    Examples:
        >>> parse_billing_period("P7D")
        7

        >>> parse_billing_period("P1M")
        30
    """
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    normalized = period.strip().upper()
    match = _PERIOD_PATTERN.match(normalized)
    if not match:
        raise ValueError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1
    if number <= 0:
        raise ValueError(f"Period number must be positive, got: {number}")

    return number * DAYS_PER_UNIT[unit]


def billing_period_to_timedelta(period: str) -> timedelta:
    """Convert an ISO 8601 duration string to a timedelta.

    Examples:
        >>> billing_period_to_timedelta("P1W")
        datetime.timedelta(days=7)
    """
    return timedelta(days=parse_billing_period(period))


def validate_billing_period(period: str) -> bool:
    """Check whether a string is an accepted duration."""
    try:
        parse_billing_period(period)
        return True
    except (ValueError, TypeError):
        return False
