from dataclasses import dataclass
from typing import Any, Iterable

from .time_parsing import anchor_time, format_range


@dataclass(frozen=True)
class OccupiedInterval:
    start: str
    end: str

    def __post_init__(self) -> None:
        if not is_interval_consistent(self.start, self.end):
            raise ValueError("Occupied interval start time must be earlier than end time.")

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start, "end": self.end}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "OccupiedInterval":
        return OccupiedInterval(start=str(data["start"]), end=str(data["end"]))


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    conflicting_range: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"conflict": self.conflict}
        if self.conflicting_range is not None:
            payload["conflicting_range"] = self.conflicting_range
        return payload


def is_interval_consistent(start: str, end: str) -> bool:
    """Return True when ``end`` is strictly after ``start`` on the same day.

    Overnight ranges such as 23:00-00:30 are inconsistent.
    """
    return anchor_time(start) < anchor_time(end)


def has_time_overlap(start: str, end: str, occupied_start: str, occupied_end: str) -> bool:
    """Return True when two same-day time ranges overlap by even one second.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-10:30 and 10:30-11:00) do not overlap,
    while identical ranges do.
    """
    if not is_interval_consistent(start, end):
        raise ValueError("start must be earlier than end.")
    if not is_interval_consistent(occupied_start, occupied_end):
        raise ValueError("occupied_start must be earlier than occupied_end.")

    return anchor_time(start) < anchor_time(occupied_end) and anchor_time(end) > anchor_time(occupied_start)


def find_conflict(start: str, end: str, occupied: Iterable[OccupiedInterval]) -> ConflictResult:
    """Return the first occupied interval, in the order given, that overlaps ``start``-``end``."""
    if not is_interval_consistent(start, end):
        return ConflictResult(conflict=True)

    for interval in occupied:
        if has_time_overlap(start, end, interval.start, interval.end):
            return ConflictResult(conflict=True, conflicting_range=format_range(interval.start, interval.end))
    return ConflictResult(conflict=False)


def can_reserve(start: str, end: str, occupied: Iterable[OccupiedInterval]) -> bool:
    return not find_conflict(start, end, occupied).conflict
