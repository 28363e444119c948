from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

# Windows close at millisecond precision: Saturday 23:59:59.999.
END_OF_DAY = time(23, 59, 59, 999000)


class WindowKey(str, Enum):
    this_week = "thisWeek"
    this_month = "thisMonth"
    all_time = "allTime"


@dataclass(frozen=True)
class Window:
    key: WindowKey
    start: Optional[datetime]
    end: Optional[datetime]

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True


def local_now() -> datetime:
    """Wall-clock time in the configured timezone, as a naive datetime."""
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def as_local(moment: datetime) -> datetime:
    """Naive local time for ``moment``; naive values are taken as local already."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def resolve_window(
    key: Optional[str], *, now: Optional[datetime] = None
) -> Window:
    now = now or local_now()
    window_key = WindowKey(key) if key else WindowKey.all_time
    if window_key == WindowKey.all_time:
        return Window(window_key, None, None)

    today = now.date()
    if window_key == WindowKey.this_week:
        # weeks start on Sunday
        days_since_sunday = (today.weekday() + 1) % 7
        first = today - timedelta(days=days_since_sunday)
        last = first + timedelta(days=6)
    else:
        first = today.replace(day=1)
        if first.month == 12:
            next_month = first.replace(year=first.year + 1, month=1)
        else:
            next_month = first.replace(month=first.month + 1)
        last = next_month - timedelta(days=1)

    return Window(
        window_key,
        datetime.combine(first, time.min),
        datetime.combine(last, END_OF_DAY),
    )
