"""Time-window helpers: clock strings, day-relative minutes, window bounds.

All times are local wall-clock times expressed either as ``HH:MM`` strings or
as minutes since midnight (0-1439). Parsing never raises for malformed input
on the generation path; callers fall back to the per-label defaults in
``DEFAULT_TIME_WINDOWS``.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime

from regimen.models import TimeWindow, WindowKind, WindowLabel

logger = logging.getLogger(__name__)

_CLOCK_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")

MINUTES_PER_DAY = 24 * 60

# Exact-time windows count as "in window" within this many minutes either side.
EXACT_WINDOW_TOLERANCE_MINUTES = 30

DEFAULT_TIME_WINDOWS: dict[WindowLabel, tuple[str, str]] = {
    WindowLabel.morning: ("06:00", "10:00"),
    WindowLabel.afternoon: ("12:00", "14:00"),
    WindowLabel.evening: ("17:00", "20:00"),
    WindowLabel.night: ("20:00", "23:00"),
    WindowLabel.custom: ("09:00", "17:00"),
}


def parse_clock(value: str | None) -> int | None:
    """Parse ``HH:MM`` (or ``HH:MM:SS``) into minutes since midnight.

    Returns ``None`` for missing or malformed values instead of raising.
    """
    if not value:
        return None
    match = _CLOCK_PATTERN.match(value)
    if match is None:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def time_to_minutes(value: str) -> int:
    """Strict variant of :func:`parse_clock`; raises ``ValueError`` on bad input."""
    minutes = parse_clock(value)
    if minutes is None:
        raise ValueError(f"Invalid clock time: {value!r} (expected HH:MM)")
    return minutes


def minutes_to_time(minutes: int) -> str:
    """Format minutes since midnight as ``HH:MM``."""
    minutes = max(0, min(minutes, MINUTES_PER_DAY - 1))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_minutes(minutes: int) -> str:
    """Format minutes since midnight for display, e.g. ``8:05 AM``."""
    hours, mins = divmod(minutes, 60)
    suffix = "PM" if hours >= 12 else "AM"
    hour12 = hours % 12 or 12
    return f"{hour12}:{mins:02d} {suffix}"


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def _label_default(label: WindowLabel, index: int) -> int:
    # Defaults are well-formed constants, so the strict parser is safe here.
    return time_to_minutes(DEFAULT_TIME_WINDOWS[label][index])


def _resolve(value: str | None, label: WindowLabel, index: int, window_id: str) -> int:
    parsed = parse_clock(value)
    if parsed is None:
        if value:
            logger.warning(
                "Malformed time %r on window %s; using %s default",
                value,
                window_id,
                label.value,
            )
        return _label_default(label, index)
    return parsed


def window_start_minutes(window: TimeWindow) -> int:
    """Start of *window* in minutes; exact windows start at their ``at`` time."""
    if window.kind == WindowKind.exact and window.at:
        return _resolve(window.at, window.label, 0, window.id)
    return _resolve(window.start, window.label, 0, window.id)


def window_end_minutes(window: TimeWindow) -> int:
    """End of validity of *window*; exact windows end at their ``at`` time."""
    if window.kind == WindowKind.exact and window.at:
        return _resolve(window.at, window.label, 0, window.id)
    return _resolve(window.end, window.label, 1, window.id)


def scheduled_time(window: TimeWindow) -> str:
    """Clock time an instance of *window* is scheduled at (``HH:MM``)."""
    return minutes_to_time(window_start_minutes(window))


def is_time_in_window(minute: int, window: TimeWindow) -> bool:
    """True if *minute* falls inside *window*.

    Exact-time windows match within ``EXACT_WINDOW_TOLERANCE_MINUTES``; range
    windows are inclusive at both ends.
    """
    if window.kind == WindowKind.exact and window.at:
        at = window_start_minutes(window)
        return abs(minute - at) <= EXACT_WINDOW_TOLERANCE_MINUTES
    return window_start_minutes(window) <= minute <= window_end_minutes(window)


def current_window_label(minute: int) -> WindowLabel:
    """Coarse part-of-day label for *minute*."""
    hours = minute // 60
    if 6 <= hours < 12:
        return WindowLabel.morning
    if 12 <= hours < 17:
        return WindowLabel.afternoon
    if 17 <= hours < 20:
        return WindowLabel.evening
    return WindowLabel.night


def default_window_for(label: WindowLabel) -> tuple[str, str]:
    """Default ``(start, end)`` clock strings for *label*."""
    return DEFAULT_TIME_WINDOWS[label]


def minutes_since_day_start(day: date, moment: datetime) -> int:
    """Minutes from midnight of *day* to *moment* (wall clock).

    Negative when *moment* is before *day*; above ``MINUTES_PER_DAY`` when it
    is on a later day, so late-night windows keep their grace period across
    midnight.
    """
    return (moment.date() - day).days * MINUTES_PER_DAY + minute_of_day(moment)
