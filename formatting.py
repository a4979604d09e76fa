"""
Human-readable labels for reminder lead times and reminder messages.
"""

from datetime import datetime, timezone
from typing import List, Optional

import pytz


def _number(value: float) -> str:
    # 2.0 -> "2", 1.5 -> "1.5"; no rounding
    if float(value).is_integer():
        return str(int(value))
    return repr(value)


def format_lead_time(minutes: int) -> str:
    if minutes < 0:
        raise ValueError("minutes must be >= 0")
    if minutes < 60:
        return "1 minute" if minutes == 1 else f"{minutes} minutes"
    if minutes < 1440:
        hours = minutes / 60
        return "1 hour" if hours == 1 else f"{_number(hours)} hours"
    days = minutes / 1440
    return "1 day" if days == 1 else f"{_number(days)} days"


def local_clock(dt: datetime, tz_name: str = "UTC") -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(pytz.timezone(tz_name)).strftime("%H:%M")


def render_message(
    title: str,
    event_start: datetime,
    minutes_before: int,
    location: Optional[str] = None,
    tz_name: str = "UTC",
) -> str:
    location_text = f" at {location}" if location else ""
    return (
        f'Reminder: "{title}" starts in {format_lead_time(minutes_before)} '
        f"at {local_clock(event_start, tz_name)}{location_text}."
    )


def render_all_day_message(title: str, location: Optional[str] = None) -> str:
    """All-day events have no start time to announce."""
    location_text = f" at {location}" if location else ""
    return f'Reminder: "{title}" is today{location_text}.'


DEFAULT_LEAD_OPTIONS = [1, 5, 15, 30, 45, 60, 120, 240, 480, 1440]


def _group(minutes: int) -> str:
    if minutes < 60:
        return "minutes"
    if minutes < 1440:
        return "hours"
    return "days"


def reminder_time_options(options: Optional[List[int]] = None) -> List[dict]:
    """Preset lead times as shown in the reminder settings screen."""
    return [
        {"value": m, "label": format_lead_time(m), "group": _group(m)}
        for m in (options or DEFAULT_LEAD_OPTIONS)
    ]
