from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any

import holidays as pyholidays

from .time_parsing import parse_calendar_date

HOLIDAY_COUNTRY = "CL"
_HOLIDAY_CACHE: dict[tuple[str, int], set[date]] = {}


class Recurrence(str, Enum):
    ONCE = "once"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class Period:
    """An academic term that bounds a recurring class schedule."""

    name: str
    start_date: date
    end_date: date

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValueError("Period start_date must not be after end_date.")

    def contains(self, target: date) -> bool:
        return self.start_date <= target <= self.end_date

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Period":
        return Period(
            name=str(data.get("name") or ""),
            start_date=parse_calendar_date(str(data["start_date"])),
            end_date=parse_calendar_date(str(data["end_date"])),
        )


def expand_schedule(
    first_date: date,
    recurrence: Recurrence | str,
    period: Period,
    skip_holidays: bool = True,
    country: str = HOLIDAY_COUNTRY,
) -> list[date]:
    """Return every occurrence of a schedule inside ``period``.

    Monthly schedules keep the day of month and skip months that are too short
    for it (a schedule on the 31st has no occurrence in April).
    """
    recurrence = Recurrence(recurrence)
    if not period.contains(first_date):
        raise ValueError("first_date must fall within the period.")

    if recurrence is Recurrence.ONCE:
        occurrences = [first_date]
    elif recurrence is Recurrence.WEEKLY:
        occurrences = []
        cursor = first_date
        while cursor <= period.end_date:
            occurrences.append(cursor)
            cursor += timedelta(days=7)
    else:
        occurrences = []
        year, month = first_date.year, first_date.month
        while date(year, month, 1) <= period.end_date:
            if first_date.day <= calendar.monthrange(year, month)[1]:
                candidate = date(year, month, first_date.day)
                if candidate <= period.end_date:
                    occurrences.append(candidate)
            month += 1
            if month > 12:
                year, month = year + 1, 1

    if skip_holidays:
        occurrences = [day for day in occurrences if not is_public_holiday(day, country)]
    return occurrences


def is_public_holiday(target_date: date, country: str = HOLIDAY_COUNTRY) -> bool:
    key = (country, target_date.year)
    if key not in _HOLIDAY_CACHE:
        holiday_map = pyholidays.country_holidays(country, years=[target_date.year])
        _HOLIDAY_CACHE[key] = set(holiday_map.keys())
    return target_date in _HOLIDAY_CACHE[key]
