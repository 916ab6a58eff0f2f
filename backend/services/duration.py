"""
Elapsed-time helpers for check-in / check-out pairs.

Durations are computed on time-of-day only. When the check-out clock time is
earlier than the check-in clock time the stay is assumed to have crossed
midnight once; stays longer than a day cannot be detected.
"""
from datetime import datetime, time

SECONDS_PER_DAY = 24 * 3600
ZERO_DURATION = "0:00:00"

TimeValue = datetime | time | str | None


def to_seconds(value: TimeValue) -> int | None:
    """Seconds since midnight for a datetime, time or "HH:MM[:SS]" string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.time()
    if isinstance(value, time):
        return value.hour * 3600 + value.minute * 60 + value.second

    text = str(value).strip()
    parts = text.split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        hh, mm = int(parts[0]), int(parts[1])
        ss = int(parts[2]) if len(parts) == 3 else 0
    except ValueError:
        return None
    if not (0 <= hh < 24 and 0 <= mm < 60 and 0 <= ss < 60):
        return None
    return hh * 3600 + mm * 60 + ss


def format_seconds(total: int) -> str:
    total = max(0, int(total))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def elapsed_seconds(check_in: TimeValue, check_out: TimeValue) -> int | None:
    start = to_seconds(check_in)
    end = to_seconds(check_out)
    if start is None or end is None:
        return None
    if end < start:
        end += SECONDS_PER_DAY
    return end - start


def duration(check_in: TimeValue, check_out: TimeValue) -> str:
    """
    "H:MM:SS" between two clock times.

    Returns "0:00:00" for missing or unparseable input, so a zero result does
    not prove both values parsed.
    """
    seconds = elapsed_seconds(check_in, check_out)
    if seconds is None:
        return ZERO_DURATION
    return format_seconds(seconds)


def format_clock(value: TimeValue) -> str:
    """Normalize to "HH:MM:SS"; empty string when the value cannot be read."""
    seconds = to_seconds(value)
    if seconds is None:
        return ""
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
