"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    Accepts a lowercase ``z`` as the UTC designator (some webhook senders
    emit it) and returns ``None`` if the value cannot be parsed.
    """
    if not value:
        return None
    try:
        if value.endswith("z"):
            value = value[:-1] + "Z"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def add_months(value: dt.datetime, months: int) -> dt.datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    next_month = dt.date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month - dt.timedelta(days=1)).day
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def end_of_day(value: dt.datetime) -> dt.datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999999)


def money(value) -> Decimal:
    """Coerce ``value`` to a Decimal rounded to cents."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


_EMAIL_RE = re.compile(r"<([^<>@\s]+@[^<>\s]+)>")


def extract_address(value: str | None) -> Optional[str]:
    """Return the bare, lower-cased address from ``"Name <a@b>"`` or ``a@b``."""
    if not value:
        return None
    m = _EMAIL_RE.search(value)
    address = m.group(1) if m else value.strip()
    return address.lower() or None
