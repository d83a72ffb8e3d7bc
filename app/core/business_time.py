"""Business calendar helpers.

Every stored instant is timezone-aware UTC. Calendar concepts (a bare date, the
hour of a visit, "today") are read in the configured business timezone, which
defaults to KST (Asia/Seoul) so results do not depend on the host locale.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from app.core.config import settings

_SECONDS_PER_DAY = 24 * 60 * 60


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_instant(value: date | datetime) -> datetime:
    """Naive datetimes are UTC; bare dates mean midnight in the business timezone."""
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=business_tz()).astimezone(timezone.utc)


def to_local(value: datetime) -> datetime:
    return as_utc(value).astimezone(business_tz())


def local_date(value: datetime) -> date:
    return to_local(value).date()


def local_today(now: datetime | None = None) -> date:
    return local_date(now or utc_now())


def start_of_local_day(value: date) -> datetime:
    return to_instant(value)


def end_of_local_day(value: date) -> datetime:
    return to_instant(value + timedelta(days=1)) - timedelta(microseconds=1)


def elapsed_days(later: date | datetime, earlier: date | datetime) -> int:
    """Whole days elapsed between two instants, floored (23h59m is 0 days)."""
    delta = to_instant(later) - to_instant(earlier)
    return int(delta.total_seconds() // _SECONDS_PER_DAY)


def month_span(first: datetime, last: datetime) -> int:
    """Inclusive calendar-month span between two instants, never below 1."""
    first_local = to_local(first)
    last_local = to_local(last)
    span = (last_local.year - first_local.year) * 12 + (last_local.month - first_local.month) + 1
    return max(1, span)
