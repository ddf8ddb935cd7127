"""Recurring day + time-of-day windows attached to restriction policies.

A window is encoded as ``HH:mm-HH:mm`` optionally followed by ``|`` and a
comma separated day-set in the local weekday alphabet, e.g.
``09:00-10:00|월,수``. No encoding means the policy is always valid.

Times are always read in one canonical fixed-offset zone, independent of
the zone of the machine doing the evaluation. A window opens a fixed lead
time before its nominal start so a code scanned slightly early still works.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from qrlock.utils.time import (
    LOCAL_DAYS,
    canonical_now,
    minutes_of_day,
    parse_hhmm,
    to_local_days,
)

DEFAULT_OFFSET_HOURS = 9
DEFAULT_LEAD_MINUTES = 10


class WindowStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MALFORMED = "malformed"


class WindowCheck(BaseModel):
    """Outcome of a window evaluation.

    ``CLOSED`` is a normal denial, ``MALFORMED`` means the stored window is
    broken. Both deny access.
    """

    status: WindowStatus
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.status == WindowStatus.OPEN


class TimeWindow(BaseModel):
    start: str
    end: str
    days: list[str] = []

    def encode(self) -> str:
        encoded = f"{self.start}-{self.end}"
        if self.days:
            encoded += "|" + ",".join(self.days)
        return encoded


def parse_window(encoding: str) -> TimeWindow:
    """Parses a window encoding, raising ValueError on malformed input."""
    time_part, sep, days_part = encoding.partition("|")
    start, dash, end = time_part.strip().partition("-")
    if not dash:
        raise ValueError(f"Window has no '-' separator: {encoding!r}")
    start, end = start.strip(), end.strip()
    parse_hhmm(start)
    parse_hhmm(end)

    days: list[str] = []
    if sep and days_part.strip():
        days = [d for d in (p.strip() for p in days_part.split(",")) if d]
        for day in days:
            if day not in LOCAL_DAYS:
                raise ValueError(f"Unknown weekday {day!r} in window {encoding!r}")
    return TimeWindow(start=start, end=end, days=days)


def encode_window(time_window: str | None, days: list[str] | None = None) -> str | None:
    """Builds the stored encoding from a ``HH:mm-HH:mm`` range and a day list.

    Days may use either weekday alphabet; they are stored in the local one.
    """
    if not time_window:
        return None
    window = parse_window(time_window)
    if days:
        window.days = to_local_days(days)
    return window.encode()


def evaluate(
    encoding: str | None,
    now: datetime,
    *,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
    lead_minutes: int = DEFAULT_LEAD_MINUTES,
) -> WindowCheck:
    """Checks whether ``now`` falls inside the encoded window.

    Pure function of its inputs. The day check looks at the current day
    only, so the post-midnight half of a window that spans midnight is
    refused unless the following day is also in the day-set.
    """
    if not encoding:
        return WindowCheck(status=WindowStatus.OPEN)

    try:
        window = parse_window(encoding)
    except ValueError as e:
        return WindowCheck(status=WindowStatus.MALFORMED, reason=f"parse error: {e}")

    local = canonical_now(now, offset_hours)

    if window.days:
        current_day = LOCAL_DAYS[local.weekday()]
        if current_day not in window.days:
            return WindowCheck(
                status=WindowStatus.CLOSED,
                reason=(
                    f"Not a scheduled day (current: {current_day}, "
                    f"allowed: {','.join(window.days)})"
                ),
            )

    current = local.hour * 60 + local.minute
    start = minutes_of_day(window.start) - lead_minutes
    end = minutes_of_day(window.end)

    if end < start:
        # Spans midnight, e.g. 23:00-01:00
        within = current >= start or current <= end
    else:
        within = start <= current <= end

    if not within:
        return WindowCheck(
            status=WindowStatus.CLOSED,
            reason=(
                f"Outside the scheduled time (current: {local:%H:%M}, "
                f"range: {window.start}~{window.end})"
            ),
        )
    return WindowCheck(status=WindowStatus.OPEN)
