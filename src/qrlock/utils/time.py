import re
from datetime import datetime, timedelta, timezone

# Monday first, matching datetime.weekday().
LOCAL_DAYS = ("월", "화", "수", "목", "금", "토", "일")
SERVER_DAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

SERVER_TO_LOCAL = dict(zip(SERVER_DAYS, LOCAL_DAYS))
LOCAL_TO_SERVER = dict(zip(LOCAL_DAYS, SERVER_DAYS))

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_HHMMSS = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(:[0-5]\d)?$")


def to_local_days(days: list[str] | None) -> list[str]:
    """Translates day codes in either alphabet to the local one, keeping order."""
    result = []
    for day in days or []:
        code = day.strip()
        if code in SERVER_TO_LOCAL:
            code = SERVER_TO_LOCAL[code]
        elif code.upper() in SERVER_TO_LOCAL:
            code = SERVER_TO_LOCAL[code.upper()]
        if code not in LOCAL_TO_SERVER:
            raise ValueError(f"Unknown weekday code: {day!r}")
        result.append(code)
    return result


def to_server_days(days: list[str] | None) -> list[str]:
    """Translates day codes in either alphabet to the server one, keeping order."""
    return [LOCAL_TO_SERVER[d] for d in to_local_days(days)]


def parse_hhmm(value: str) -> tuple[int, int]:
    """Parses a strict 24h ``HH:mm`` string."""
    match = _HHMM.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid HH:mm time: {value!r}")
    return int(match.group(1)), int(match.group(2))


def normalize_hhmm(value: str) -> str:
    """Accepts ``HH:mm`` or ``HH:mm:ss`` and returns ``HH:mm``."""
    match = _HHMMSS.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid time: {value!r}")
    return f"{match.group(1)}:{match.group(2)}"


def minutes_of_day(value: str) -> int:
    hours, minutes = parse_hhmm(value)
    return hours * 60 + minutes


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def canonical_now(now: datetime, offset_hours: int) -> datetime:
    """Shifts an instant into the fixed-offset zone policy times are written in.

    Naive datetimes are taken to be UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone(timedelta(hours=offset_hours)))


def parse_time_string(time_str: str) -> datetime:
    """Parses time strings like '8pm', '8:30pm', '20:00', '20:30'."""
    formats = ["%I%p", "%I:%M%p", "%H:%M", "%H:%M:%S"]
    time_str = time_str.lower().replace(" ", "")
    now = datetime.now()
    for fmt in formats:
        try:
            parsed_time = datetime.strptime(time_str, fmt).time()
            return datetime.combine(now.date(), parsed_time)
        except ValueError:
            continue
    raise ValueError(f"Could not parse time: {time_str}")


def to_hhmm(time_str: str) -> str:
    """Normalizes loose user input ('8pm') to ``HH:mm``."""
    return parse_time_string(time_str).strftime("%H:%M")


def format_duration_seconds(seconds: int) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 30m' or '45m').
    """
    minutes = seconds // 60
    if minutes == 0 and seconds > 0:  # Handle durations less than a minute
        return "<1m"
    elif minutes <= 60:
        return f"{minutes}m"
    else:
        hours = minutes // 60
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m"


def calculate_from_range(
    start_str: str, end_str: str, now: datetime | None = None
) -> tuple[int, int, int]:
    """
    Calculates delay_seconds, duration_seconds (remaining), and total_duration_seconds from a time range.
    Returns (delay_seconds, duration_seconds, total_duration_seconds).
    """
    if now is None:
        now = datetime.now()

    start_dt = parse_time_string(start_str)
    end_dt = parse_time_string(end_str)

    # Ensure start/end match the reference date
    start_dt = datetime.combine(now.date(), start_dt.time(), tzinfo=now.tzinfo)
    end_dt = datetime.combine(now.date(), end_dt.time(), tzinfo=now.tzinfo)

    # If end is before start, assume end is tomorrow
    if end_dt <= start_dt:
        end_dt += timedelta(days=1)

    total_duration_seconds = int((end_dt - start_dt).total_seconds())

    # A window that opened yesterday may still be running
    if start_dt - timedelta(days=1) <= now < end_dt - timedelta(days=1):
        start_dt -= timedelta(days=1)
        end_dt -= timedelta(days=1)

    if start_dt <= now < end_dt:
        # We are already in the time range, start immediately
        delay_seconds = 0
        duration_seconds = max(1, int((end_dt - now).total_seconds()))
    elif start_dt > now:
        delay_seconds = int((start_dt - now).total_seconds())
        duration_seconds = total_duration_seconds
    else:
        # Both start and end in the past, assume tomorrow
        start_dt += timedelta(days=1)
        end_dt += timedelta(days=1)
        delay_seconds = int((start_dt - now).total_seconds())
        duration_seconds = total_duration_seconds

    return delay_seconds, duration_seconds, total_duration_seconds
