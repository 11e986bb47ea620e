"""Normalization functions for provider payloads.

All functions accept str | None (or the raw JSON value) and return the
appropriate type or None.
"""

from __future__ import annotations

import calendar
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_username  (for member lookup)
# ---------------------------------------------------------------------------

def normalize_username(value: str | None) -> str | None:
    """Lowercase and collapse whitespace.

    Player names are matched case-insensitively; punctuation and internal
    single spaces are significant ("Dan xo" != "Danxo").
    """
    v = normalize_space(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_instant
# ---------------------------------------------------------------------------

def parse_instant(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the trailing 'Z' form the provider emits. Naive values are
    assumed to be UTC. Returns None for blank or unparseable input.
    """
    v = trim(value) if isinstance(value, str) else None
    if v is None:
        return None
    if v.endswith("Z") or v.endswith("z"):
        v = v[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(v)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Rule 5: parse_progress
# ---------------------------------------------------------------------------

def parse_progress(value: object) -> Decimal | None:
    """Return a progress delta as Decimal, or None when not numeric.

    Booleans are rejected (bool is an int subclass). Floats go through str()
    so 1.1 stays 1.1 rather than its binary expansion.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        value = str(value)
    if not isinstance(value, str):
        return None
    try:
        d = Decimal(value.strip())
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return d


# ---------------------------------------------------------------------------
# Calendar helper
# ---------------------------------------------------------------------------

def one_month_before(moment: datetime) -> datetime:
    """Same wall-clock instant one calendar month earlier.

    The day is clamped to the last day of the previous month
    (2025-03-31 -> 2025-02-28).
    """
    year, month = moment.year, moment.month - 1
    if month == 0:
        year, month = year - 1, 12
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))
