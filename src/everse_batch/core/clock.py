"""Tenant-local calendar windows.

Every engine derives its hour, day, and month boundaries from TenantClock so
that zone and DST handling lives in one place. All functions are pure; the
reference instant is always passed in explicitly.
"""

import calendar
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from everse_batch.core.errors import InvalidTimeZoneError
from everse_batch.core.models import Company


def add_months(value: datetime, months: int) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day to the target month.

    Args:
        value: The datetime to shift (naive or aware; tzinfo is preserved).
        months: Number of months, may be negative.

    Returns:
        The shifted datetime. 31 March minus one month is 28 (or 29) February.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_months_to_date(value: date, months: int) -> date:
    shifted = add_months(datetime.combine(value, time.min), months)
    return shifted.date()


@dataclass(frozen=True)
class MonthWindow:
    """A calendar month in tenant-local wall-clock time.

    start is 00:00 on day 1; end is start + 1 month - 1 minute (inclusive).
    """

    start: datetime
    end: datetime

    def hours(self) -> Iterator[datetime]:
        """Yield every whole local hour from start through end."""
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(hours=1)


@dataclass(frozen=True)
class HourWindow:
    """The previous full UTC hour, with its tenant-local wall-clock equivalent."""

    utc_start: datetime
    utc_end: datetime
    local_start: datetime
    local_end: datetime


class TenantClock:
    """Calendar arithmetic in a single tenant's time zone."""

    def __init__(self, time_zone: str) -> None:
        try:
            self._zone = ZoneInfo(time_zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidTimeZoneError(f"Unknown time zone: {time_zone!r}") from exc
        self.time_zone = time_zone

    @classmethod
    def for_company(cls, company: Company) -> "TenantClock":
        """Build a clock for a company using its country's zone."""
        return cls(company.time_zone)

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def to_local(self, instant: datetime) -> datetime:
        """Convert an aware instant to naive local wall-clock time."""
        _require_aware(instant)
        return instant.astimezone(self._zone).replace(tzinfo=None)

    def to_utc(self, local: datetime) -> datetime:
        """Convert naive local wall-clock time to an aware UTC instant."""
        return local.replace(tzinfo=self._zone).astimezone(timezone.utc)

    def local_now(self, instant: datetime) -> datetime:
        """Local wall-clock time at instant, truncated to the minute."""
        return self.to_local(instant).replace(second=0, microsecond=0)

    def today(self, instant: datetime) -> date:
        return self.to_local(instant).date()

    def this_month(self, instant: datetime) -> MonthWindow:
        return self._month_window(instant, 0)

    def last_month(self, instant: datetime) -> MonthWindow:
        return self._month_window(instant, -1)

    def next_month(self, instant: datetime) -> MonthWindow:
        return self._month_window(instant, 1)

    def previous_hour(self, instant: datetime) -> HourWindow:
        """Return the last full UTC hour before instant.

        local_start is utc_start in tenant wall-clock time, so a +05:30 zone
        yields a window starting on the half hour. local_end is always one
        wall-clock hour later: on a DST fall-back both UTC bounds map to the
        same local time, and readings are bucketed by wall clock.
        """
        _require_aware(instant)
        utc_end = instant.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        utc_start = utc_end - timedelta(hours=1)
        local_start = self.to_local(utc_start)
        return HourWindow(
            utc_start=utc_start,
            utc_end=utc_end,
            local_start=local_start,
            local_end=local_start + timedelta(hours=1),
        )

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """Return the UTC instants [start, end) of a local calendar day."""
        start = self.to_utc(datetime.combine(day, time.min))
        end = self.to_utc(datetime.combine(day + timedelta(days=1), time.min))
        return start, end

    def _month_window(self, instant: datetime, offset: int) -> MonthWindow:
        first = self.local_now(instant).replace(day=1, hour=0, minute=0)
        start = add_months(first, offset)
        end = add_months(start, 1) - timedelta(minutes=1)
        return MonthWindow(start=start, end=end)


def _require_aware(instant: datetime) -> None:
    if instant.tzinfo is None or instant.utcoffset() is None:
        raise ValueError("Reference instant must be timezone-aware")
