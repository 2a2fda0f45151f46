# src/engine/schedules.py
"""
Recurrence helpers for scheduled jobs.

day_of_week follows cron numbering (0 = Sunday). All times are naive UTC,
like every other timestamp in the store.
"""
import calendar
from datetime import datetime, timedelta

from engine.models import utcnow

DEFAULT_TIMES = {"SCAN": "02:00", "REPORT": "09:00"}
DEFAULT_DAY_OF_WEEK = 1
DEFAULT_DAY_OF_MONTH = 1


def _parse_time(value: str):
    hours, minutes = (int(part) for part in value.split(":"))
    return hours, minutes


def cron_pattern(frequency: str, time: str, day_of_week: int = None, day_of_month: int = None) -> str:
    hours, minutes = _parse_time(time)
    if frequency == "weekly":
        weekday = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
        return f"{minutes} {hours} * * {weekday}"
    if frequency == "monthly":
        return f"{minutes} {hours} {day_of_month or DEFAULT_DAY_OF_MONTH} * *"
    return f"{minutes} {hours} * * *"


def next_run(frequency: str, time: str, day_of_week: int = None, day_of_month: int = None,
             after: datetime = None) -> datetime:
    """First fire time strictly after `after` (default: now)."""
    after = after or utcnow()
    hours, minutes = _parse_time(time)

    if frequency == "daily":
        candidate = after.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate

    if frequency == "weekly":
        weekday = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
        candidate = after.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        current = (candidate.weekday() + 1) % 7
        candidate += timedelta(days=(weekday - current) % 7)
        if candidate <= after:
            candidate += timedelta(days=7)
        return candidate

    if frequency == "monthly":
        day = day_of_month or DEFAULT_DAY_OF_MONTH
        year, month = after.year, after.month
        while True:
            # short months fire on their last day
            last_day = calendar.monthrange(year, month)[1]
            candidate = datetime(year, month, min(day, last_day), hours, minutes)
            if candidate > after:
                return candidate
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)

    raise ValueError(f"Unsupported frequency: {frequency}")
