from datetime import date, datetime, time

import pytz


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ["1", "true", "yes", "on"]


def parse_day_value(raw):
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def parse_instant(raw, tz, end_of_day=False):
    """
    Parse an ISO datetime or a bare YYYY-MM-DD into an aware datetime.
    Naive values are read as wall time in `tz`; bare days expand to the
    start (or end, with end_of_day) of that day. Returns None on failure.
    """
    if raw is None or str(raw).strip() == "":
        return None
    text = str(raw).strip()
    day_obj = parse_day_value(text) if len(text) == 10 else None
    if day_obj:
        wall = datetime.combine(day_obj, time.max if end_of_day else time.min)
        return tz.localize(wall)
    try:
        value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if value.tzinfo is None:
        return tz.localize(value)
    return value


def parse_window(start_raw, end_raw, tz_name="UTC"):
    """Return (start, end, error). Exactly one of the pair or error is set."""
    try:
        tz = pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        return None, None, f"Unknown timezone: {tz_name}"
    start = parse_instant(start_raw, tz)
    end = parse_instant(end_raw, tz, end_of_day=True)
    if start is None or end is None:
        return None, None, "start and end are required (ISO datetime or YYYY-MM-DD)"
    if start > end:
        return None, None, "start must not be after end"
    return start, end, None
