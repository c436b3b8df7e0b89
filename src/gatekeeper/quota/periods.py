"""
Quota period boundaries.

Bounds are a pure function of the current time, so a quota left idle for
any number of periods lands in the right one on its next check.
"""

from datetime import date, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gatekeeper.exceptions import ConfigurationError
from gatekeeper.quota.models import QuotaPeriod


def get_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name used for period boundaries."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown quota timezone: {name}") from e


def _midnight(day: date, tz: tzinfo) -> float:
    return datetime(day.year, day.month, day.day, tzinfo=tz).timestamp()


def period_bounds(period: QuotaPeriod, now: float, tz: tzinfo) -> tuple[float, float]:
    """
    Compute the half-open period [start, end) containing `now`.

    Weeks start on Monday. Day, week and month boundaries are local
    midnights in `tz`.

    Args:
        period: Tracking period
        now: Epoch seconds
        tz: Timezone the boundaries are aligned to

    Returns:
        (period_start, period_end) in epoch seconds
    """
    local = datetime.fromtimestamp(now, tz)

    if period == QuotaPeriod.HOURLY:
        start = local.replace(minute=0, second=0, microsecond=0).timestamp()
        return start, start + 3600

    today = local.date()

    if period == QuotaPeriod.DAILY:
        return _midnight(today, tz), _midnight(today + timedelta(days=1), tz)

    if period == QuotaPeriod.WEEKLY:
        monday = today - timedelta(days=today.weekday())
        return _midnight(monday, tz), _midnight(monday + timedelta(days=7), tz)

    if period == QuotaPeriod.MONTHLY:
        first = today.replace(day=1)
        if first.month == 12:
            following = first.replace(year=first.year + 1, month=1)
        else:
            following = first.replace(month=first.month + 1)
        return _midnight(first, tz), _midnight(following, tz)

    raise ValueError(f"Unknown quota period: {period}")
