from .booking import ConflictResult, OccupiedInterval, can_reserve, find_conflict, has_time_overlap, is_interval_consistent
from .recurrence import Period, Recurrence, expand_schedule
from .time_parsing import format_range, parse_calendar_date, parse_time_of_day
from .validation import (
	DEFAULT_TIMEZONE,
	ReasonKind,
	ValidationVerdict,
	is_date_valid,
	validate_reservation,
)
from .yaml_store import (
	ReservationRecord,
	ReservationStorageError,
	ReservationValidationError,
	ReservationYamlRepository,
	ScheduleResult,
)

__all__ = [
	"ConflictResult",
	"OccupiedInterval",
	"can_reserve",
	"find_conflict",
	"has_time_overlap",
	"is_interval_consistent",
	"Period",
	"Recurrence",
	"expand_schedule",
	"format_range",
	"parse_calendar_date",
	"parse_time_of_day",
	"DEFAULT_TIMEZONE",
	"ReasonKind",
	"ValidationVerdict",
	"is_date_valid",
	"validate_reservation",
	"ReservationRecord",
	"ReservationStorageError",
	"ReservationValidationError",
	"ReservationYamlRepository",
	"ScheduleResult",
]
