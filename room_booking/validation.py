"""Reservation validation: past-date, time-ordering and conflict checks.

Everything here is a pure function of its arguments. "Now" is injected via
``reference_now`` and is only read from the clock when the caller omits it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable

import pytz

from .booking import OccupiedInterval, find_conflict, is_interval_consistent
from .time_parsing import format_range, parse_calendar_date

DEFAULT_TIMEZONE = "America/Santiago"

PAST_DATE_MESSAGE = "cannot create reservations on past dates"
INCONSISTENT_INTERVAL_MESSAGE = "end time must be after start time"
GENERIC_CONFLICT_MESSAGE = "the selected time overlaps an existing reservation"


class ReasonKind(str, Enum):
    PAST_DATE = "PAST_DATE"
    INCONSISTENT_INTERVAL = "INCONSISTENT_INTERVAL"
    SCHEDULE_CONFLICT = "SCHEDULE_CONFLICT"


@dataclass(frozen=True)
class ValidationVerdict:
    valid: bool
    reason_kind: ReasonKind | None = None
    message: str | None = None
    conflicting_range: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid}
        if self.reason_kind is not None:
            payload["reason_kind"] = self.reason_kind.value
        if self.message is not None:
            payload["message"] = self.message
        if self.conflicting_range is not None:
            payload["conflicting_range"] = self.conflicting_range
        return payload


def local_wall_clock(reference_now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> datetime:
    """Return ``reference_now`` as naive wall-clock time in ``timezone``.

    Aware instants are converted into the zone; naive ones are taken to be
    local wall-clock time there already.
    """
    tz = pytz.timezone(timezone)
    if reference_now is None:
        return datetime.now(tz).replace(tzinfo=None)
    if reference_now.tzinfo is None:
        return reference_now
    return reference_now.astimezone(tz).replace(tzinfo=None)


def local_today(reference_now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> date:
    return local_wall_clock(reference_now, timezone).date()


def is_date_valid(date_text: str, reference_now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> bool:
    """Return True when ``date_text`` is today or later in the institution's timezone."""
    return parse_calendar_date(date_text) >= local_today(reference_now, timezone)


def validate_reservation(
    date_text: str,
    start: str,
    end: str,
    occupied: Iterable[OccupiedInterval],
    reference_now: datetime | None = None,
    timezone: str = DEFAULT_TIMEZONE,
) -> ValidationVerdict:
    """Run the date, ordering and conflict checks in that order.

    The first failing check decides the verdict, so a past date is reported
    even when the times are also inverted.
    """
    if not is_date_valid(date_text, reference_now, timezone):
        return ValidationVerdict(valid=False, reason_kind=ReasonKind.PAST_DATE, message=PAST_DATE_MESSAGE)

    if not is_interval_consistent(start, end):
        return ValidationVerdict(
            valid=False,
            reason_kind=ReasonKind.INCONSISTENT_INTERVAL,
            message=INCONSISTENT_INTERVAL_MESSAGE,
        )

    return conflict_verdict(start, end, occupied)


def conflict_verdict(start: str, end: str, occupied: Iterable[OccupiedInterval]) -> ValidationVerdict:
    """Verdict for the overlap check alone, without the date and ordering checks."""
    result = find_conflict(start, end, occupied)
    if not result.conflict:
        return ValidationVerdict(valid=True)

    if result.conflicting_range:
        message = (
            f"{format_range(start, end, separator='-')} overlaps an existing reservation "
            f"({result.conflicting_range})"
        )
    else:
        message = GENERIC_CONFLICT_MESSAGE
    return ValidationVerdict(
        valid=False,
        reason_kind=ReasonKind.SCHEDULE_CONFLICT,
        message=message,
        conflicting_range=result.conflicting_range,
    )
