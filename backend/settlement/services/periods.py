"""Billing period tokens (``MM/YYYY``)."""

import re
from datetime import date, datetime, timezone

from settlement.services.errors import ValidationError

_PERIOD_RE = re.compile(r"^(\d{2})/(\d{4})$")
MIN_YEAR = 1900
MAX_YEAR = 9998


def current_period(today: date | None = None) -> str:
    today = today or datetime.now(timezone.utc).date()
    return f"{today.month:02d}/{today.year}"


def parse_period(period: str) -> tuple[int, int]:
    """Return ``(month, year)`` for a ``MM/YYYY`` token."""
    match = _PERIOD_RE.match(period or "")
    if not match:
        raise ValidationError(f"Period must be in MM/YYYY format, got {period!r}")
    month, year = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError(f"Period month must be 01-12, got {period!r}")
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValidationError(f"Period year must be {MIN_YEAR}-{MAX_YEAR}, got {period!r}")
    return month, year


def period_bounds(period: str) -> tuple[date, date]:
    """First day of the period and first day of the following month."""
    month, year = parse_period(period)
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end
