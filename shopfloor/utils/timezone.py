"""
Display-timezone conversion.

Every instant in the system is an aware UTC ``datetime``. One fixed display
offset (in hours, fractional allowed) is used for all user-facing dates and
times: scheduler workday hours, timeline day buckets and the split
``YYYY-MM-DD`` / ``HH:MM`` strings exchanged with forms.

The offset is resolved once per process:

1. ``DISPLAY_OFFSET_HOURS`` if configured;
2. the runtime's local offset when ``USE_RUNTIME_TIMEZONE`` is on;
3. ``fallback_offset_hours`` (GMT-5) otherwise, or when the runtime has no offset.

Nothing else in this module reads the wall clock.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Dict, NamedTuple, Optional, Tuple

from shopfloor.config.settings import get_settings
from shopfloor.models.entities import as_utc

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"


class SplitDateTime(NamedTuple):
    date: str
    time: str


def _runtime_offset_hours() -> Optional[float]:
    offset = datetime.now().astimezone().utcoffset()
    if offset is None:
        return None
    return offset.total_seconds() / 3600


def resolve_display_offset(
    override: Optional[float] = None,
    use_runtime_timezone: bool = True,
    fallback: float = -5.0,
) -> Tuple[float, str]:
    """Return (offset_hours, source) where source is 'configured', 'runtime' or 'fallback'."""
    if override is not None:
        return float(override), "configured"
    if use_runtime_timezone:
        runtime = _runtime_offset_hours()
        if runtime is not None:
            return runtime, "runtime"
        logger.warning(f"Runtime timezone offset unavailable, falling back to GMT{fallback:+g}")
    return float(fallback), "fallback"


class TimezoneConverter:
    def __init__(self, offset_hours: float, source: str = "configured"):
        self.offset_hours = offset_hours
        self.source = source
        self.tz = timezone(timedelta(hours=offset_hours))

    def to_display(self, instant: datetime) -> datetime:
        """Same instant, expressed with the display offset (wall-clock fields are display-local)."""
        return as_utc(instant).astimezone(self.tz)

    def to_utc(self, instant: datetime) -> datetime:
        return as_utc(instant)

    def display_date(self, instant: datetime) -> date:
        return self.to_display(instant).date()

    def display_start_of_day(self, instant: datetime) -> datetime:
        """Display-local midnight of the day containing ``instant`` (not UTC midnight)."""
        return self.to_display(instant).replace(hour=0, minute=0, second=0, microsecond=0)

    def day_start(self, day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=self.tz)

    def day_end(self, day: date) -> datetime:
        """Exclusive end of a display day: the next day's start."""
        return self.day_start(day + timedelta(days=1))

    def at(self, day: date, minute_of_day: int) -> datetime:
        """UTC instant for a display-local day plus minutes after midnight."""
        return as_utc(self.day_start(day) + timedelta(minutes=minute_of_day))

    def format_split(self, instant: datetime) -> SplitDateTime:
        local = self.to_display(instant)
        return SplitDateTime(local.strftime(DATE_FORMAT), local.strftime(TIME_FORMAT))

    def parse_split(self, date_str: str, time_str: str) -> datetime:
        """Inverse of ``format_split``: read the strings as display-local, return UTC (seconds zeroed)."""
        local = datetime.strptime(f"{date_str.strip()} {time_str.strip()}", f"{DATE_FORMAT} {TIME_FORMAT}")
        return local.replace(tzinfo=self.tz).astimezone(timezone.utc)

    @property
    def label(self) -> str:
        hours = int(self.offset_hours)
        minutes = int(round(abs(self.offset_hours - hours) * 60))
        sign = "-" if self.offset_hours < 0 else "+"
        if minutes:
            return f"GMT{sign}{abs(hours)}:{minutes:02d}"
        return f"GMT{sign}{abs(hours)}"

    def describe(self) -> Dict[str, object]:
        return {"offset_hours": self.offset_hours, "source": self.source, "label": self.label}


@lru_cache(maxsize=1)
def get_converter() -> TimezoneConverter:
    settings = get_settings()
    offset, source = resolve_display_offset(
        override=settings.display_offset_hours,
        use_runtime_timezone=settings.use_runtime_timezone,
        fallback=settings.fallback_offset_hours,
    )
    converter = TimezoneConverter(offset, source)
    logger.info(f"Display timezone resolved to {converter.label} ({source})")
    return converter
