import re
from datetime import date, datetime, time

# Every TimeOfDay is anchored on this day so only the wall-clock part is compared.
REFERENCE_DATE = date(2000, 1, 1)

_TIME_RE = re.compile(r"^(?P<hour>[01]\d|2[0-3]):(?P<minute>[0-5]\d)(?::(?P<second>[0-5]\d))?$")
_DATE_RE = re.compile(r"^(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})$")


def parse_time_of_day(text: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a naive ``time``.

    Raises ValueError for anything else; pickers upstream only emit these forms.
    """
    match = _TIME_RE.match(str(text).strip())
    if not match:
        raise ValueError(f"Invalid time of day: {text!r}. Expected format: HH:MM or HH:MM:SS")

    second_group = match.group("second")
    return time(int(match.group("hour")), int(match.group("minute")), int(second_group) if second_group else 0)


def parse_calendar_date(text: str) -> date:
    """Parse ``YYYY-MM-DD`` as a civil date. A trailing ``T...`` part is ignored."""
    date_part = str(text).strip().split("T")[0]
    match = _DATE_RE.match(date_part)
    if not match:
        raise ValueError(f"Invalid calendar date: {text!r}. Expected format: YYYY-MM-DD")

    return date(int(match.group("year")), int(match.group("month")), int(match.group("day")))


def anchor_time(text: str) -> datetime:
    return datetime.combine(REFERENCE_DATE, parse_time_of_day(text))


def format_hhmm(text: str) -> str:
    return parse_time_of_day(text).strftime("%H:%M")


def format_range(start: str, end: str, separator: str = " - ") -> str:
    return f"{format_hhmm(start)}{separator}{format_hhmm(end)}"
