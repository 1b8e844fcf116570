"""Utilities for working with timestamps and claim months."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

SECONDS_PER_DAY = 24 * 60 * 60

_YEAR_MONTH_RE = re.compile(r"^(\d{4})(0[1-9]|1[0-2])$")


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_seconds(dt: Optional[datetime]) -> Optional[float]:
    """Return the epoch seconds for ``dt`` normalised to UTC."""

    if dt is None:
        return None
    return ensure_utc(dt).timestamp()


def whole_days_between(earlier: float, later: float) -> int:
    """Return the number of elapsed whole days from ``earlier`` to ``later``."""

    return int((later - earlier) // SECONDS_PER_DAY)


def parse_year_month(value: str) -> Tuple[int, int]:
    """Split a ``YYYYMM`` string into ``(year, month)``.

    Raises ``ValueError`` for anything that is not a six digit year/month.
    """

    match = _YEAR_MONTH_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"year_month must be YYYYMM; got {value!r}")
    return int(match.group(1)), int(match.group(2))


def month_window(year_month: str, tz_name: str) -> Tuple[float, float]:
    """Return ``[start, end)`` epoch bounds of a calendar month in ``tz_name``."""

    year, month = parse_year_month(year_month)
    tz = ZoneInfo(tz_name)
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return start.timestamp(), end.timestamp()


def local_date(epoch: float, tz_name: str) -> date:
    """Return the calendar date of ``epoch`` in the clinic timezone."""

    return datetime.fromtimestamp(epoch, tz=ZoneInfo(tz_name)).date()


def local_day_of_month(epoch: float, tz_name: str) -> int:
    return local_date(epoch, tz_name).day


def compact_date(value: Optional[str | date]) -> str:
    """Render ``2024-05-01`` (or a ``date``) as ``20240501``."""

    if value is None:
        return ""
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    return str(value).replace("-", "").replace("/", "").strip()


__all__ = [
    "utc_now",
    "ensure_utc",
    "to_epoch_seconds",
    "whole_days_between",
    "parse_year_month",
    "month_window",
    "local_date",
    "local_day_of_month",
    "compact_date",
]
