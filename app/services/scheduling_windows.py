from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.clock import as_utc

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
    # Calendar-free approximation; only used for cooldown/inactivity windows.
    "months": 30 * 24 * 60 * 60,
}

DEFAULT_BUSINESS_HOURS = {"start": "09:00", "end": "17:00", "days": [1, 2, 3, 4, 5]}


def to_timedelta(amount: Any, unit: Any) -> timedelta:
    """amount/unit pair (as stored in step and workflow config) -> timedelta.

    Raises ValueError for unknown units or non-numeric/negative amounts.
    """
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"Unknown duration unit: {unit!r}")
    try:
        n = float(amount)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid duration amount: {amount!r}") from exc
    if n < 0:
        raise ValueError(f"Negative duration amount: {amount!r}")
    return timedelta(seconds=n * _UNIT_SECONDS[unit])


def duration_from_config(cfg: Optional[Dict[str, Any]]) -> Optional[timedelta]:
    if not cfg:
        return None
    return to_timedelta(cfg.get("amount"), cfg.get("unit"))


def resolve_timezone(name: Optional[str]) -> timezone | ZoneInfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone; falling back to UTC", extra={"tz_name": name})
        return timezone.utc


def _parse_hhmm(value: Any, default: time) -> time:
    if not value:
        return default
    try:
        hh, mm = str(value).split(":", 1)
        return time(int(hh), int(mm))
    except (TypeError, ValueError):
        return default


def _js_weekday(dt: datetime) -> int:
    # Stored configs use 0=Sunday..6=Saturday.
    return (dt.weekday() + 1) % 7


def next_business_time(
    moment: datetime,
    business_hours: Optional[Dict[str, Any]] = None,
    tz_name: Optional[str] = None,
) -> datetime:
    """
    Earliest instant >= moment that falls inside the business-hours window,
    evaluated in tz_name. Returned in UTC.
    """
    hours = business_hours or DEFAULT_BUSINESS_HOURS
    start = _parse_hhmm(hours.get("start"), time(9, 0))
    end = _parse_hhmm(hours.get("end"), time(17, 0))
    days = hours.get("days")
    if not days:
        days = DEFAULT_BUSINESS_HOURS["days"]
    days = {int(d) % 7 for d in days}

    if end <= start:
        logger.warning("Business hours window is empty; not adjusting", extra={"business_hours": hours})
        return as_utc(moment)

    tz = resolve_timezone(tz_name)
    local = as_utc(moment).astimezone(tz)

    for _ in range(8):
        if _js_weekday(local) in days:
            day_start = local.replace(hour=start.hour, minute=start.minute, second=0, microsecond=0)
            day_end = local.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
            if local < day_start:
                return day_start.astimezone(timezone.utc)
            if local < day_end:
                return local.astimezone(timezone.utc)

        next_day = (local + timedelta(days=1)).date()
        local = datetime.combine(next_day, time(0, 0), tzinfo=tz)

    return as_utc(moment)


def calendar_window_starts(now: datetime, tz_name: Optional[str] = None) -> Dict[str, datetime]:
    """Start of the current day, ISO week (Monday) and month in tz_name, as UTC instants."""
    tz = resolve_timezone(tz_name)
    local = as_utc(now).astimezone(tz)

    day_start = datetime.combine(local.date(), time(0, 0), tzinfo=tz)
    week_start = day_start - timedelta(days=local.weekday())
    month_start = datetime.combine(local.date().replace(day=1), time(0, 0), tzinfo=tz)

    return {
        "day": day_start.astimezone(timezone.utc),
        "week": week_start.astimezone(timezone.utc),
        "month": month_start.astimezone(timezone.utc),
    }
