"""Utility functions for the stockledger application."""

from datetime import date, datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from dateutil import parser
from dateutil.relativedelta import relativedelta

_UNITS = {
    "day": lambda n: relativedelta(days=n),
    "week": lambda n: relativedelta(weeks=n),
    "month": lambda n: relativedelta(months=n),
    "year": lambda n: relativedelta(years=n),
}


def parse_cutoff_date(date_str: Optional[str], today: Optional[date] = None) -> Optional[date]:
    """
    Parse a flexible cutoff date for balance queries.

    Cutoffs look backwards, so ambiguous input resolves to the past:

    - ISO format: "2025-02-15", "2025/02/15"
    - Keywords: "today", "yesterday", "last week", "last month"
    - Relative: "3 days ago", "2 weeks ago"
    - Month/Day: "April 15" (the most recent April 15, this year or last)

    Args:
        date_str: String representation of a date
        today: Reference date (defaults to the current date)

    Returns:
        date object if parsing succeeds, None if empty or invalid

    Examples:
        >>> parse_cutoff_date("2025-02-15")
        date(2025, 2, 15)

        >>> parse_cutoff_date("yesterday", today=date(2025, 2, 14))
        date(2025, 2, 13)

        >>> parse_cutoff_date("April 15", today=date(2025, 2, 14))
        date(2024, 4, 15)
    """
    if not date_str or not date_str.strip():
        return None

    date_str = date_str.strip()
    today = today or datetime.now().date()
    lower_str = date_str.lower()

    if lower_str == "today":
        return today
    elif lower_str == "yesterday":
        return today - relativedelta(days=1)
    elif lower_str == "last week":
        return today - relativedelta(weeks=1)
    elif lower_str == "last month":
        return today - relativedelta(months=1)

    # "X days/weeks/months ago"
    if lower_str.endswith(" ago"):
        parts = lower_str[: -len(" ago")].split()
        if len(parts) == 2:
            try:
                num = int(parts[0])
            except ValueError:
                return None
            unit = parts[1].rstrip("s")
            if unit in _UNITS:
                return today - _UNITS[unit](num)
        return None

    try:
        parsed_dt = parser.parse(date_str, default=datetime(today.year, today.month, today.day))
    except (ValueError, OverflowError, parser.ParserError):
        return None

    parsed_date = parsed_dt.date()
    # Month/day without a year that lies ahead means last year's date
    if parsed_date > today and str(parsed_dt.year) not in date_str:
        parsed_date = parsed_date - relativedelta(years=1)
    return parsed_date


def format_quantity(quantity: Decimal, allows_decimal: bool) -> str:
    """Format a quantity for messages: integers for whole-number units, two decimals otherwise."""
    if allows_decimal:
        return f"{quantity:.2f}"
    return str(quantity.to_integral_value(rounding=ROUND_FLOOR))
