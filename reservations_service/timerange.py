"""Helpers for "HH:MM" time-of-day values and whole-minute durations."""

import math
import re
from datetime import datetime

MINUTES_PER_DAY = 24 * 60

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: str) -> int:
    """
    Convert a 24-hour "HH:MM" string into minutes after midnight.

    Parameters
    ----------
    value : str
        Time of day such as "09:30" or "14:00".

    Returns
    -------
    int
        Minute offset in the range [0, 1439].

    Raises
    ------
    ValueError
        If the string is not a valid 24-hour time.
    """
    match = _HHMM_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    """Render a minute-of-day offset back as "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_between(start: datetime, end: datetime) -> int:
    """
    Whole minutes elapsed from start to end, halves rounded up.

    Parameters
    ----------
    start : datetime
        Earlier timestamp.
    end : datetime
        Later timestamp.

    Returns
    -------
    int
        round((end - start) / 60s), with .5 rounding towards +infinity.
    """
    elapsed = (end - start).total_seconds() / 60
    return int(math.floor(elapsed + 0.5))
