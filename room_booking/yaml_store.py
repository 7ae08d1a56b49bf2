from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any
import shutil
from uuid import uuid4

import pytz
import yaml

from .booking import OccupiedInterval
from .recurrence import HOLIDAY_COUNTRY, Period, Recurrence, expand_schedule
from .time_parsing import parse_calendar_date, parse_time_of_day
from .validation import (
    DEFAULT_TIMEZONE,
    ValidationVerdict,
    conflict_verdict,
    local_wall_clock,
    validate_reservation,
)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"

ALL_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED, STATUS_EXPIRED)
# Only these statuses hold a slot; rejected, cancelled and expired rows free it.
BLOCKING_STATUSES = frozenset({STATUS_PENDING, STATUS_APPROVED})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED, STATUS_EXPIRED}),
    STATUS_APPROVED: frozenset({STATUS_CANCELLED}),
}


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    room: str
    date: str
    start: str
    end: str
    status: str
    created_at: datetime
    updated_at: datetime
    requester: str | None = None
    comment: str | None = None
    schedule_id: str | None = None

    def to_interval(self) -> OccupiedInterval:
        return OccupiedInterval(start=self.start, end=self.end)

    def to_dict(self) -> dict[str, str]:
        payload = {
            "reservation_id": self.reservation_id,
            "room": self.room,
            "date": self.date,
            "start": self.start,
            "end": self.end,
            "status": self.status,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.requester is not None:
            payload["requester"] = self.requester
        if self.comment is not None:
            payload["comment"] = self.comment
        if self.schedule_id is not None:
            payload["schedule_id"] = self.schedule_id
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        return ReservationRecord(
            reservation_id=str(data["reservation_id"]),
            room=str(data["room"]),
            date=_as_date_text(data["date"]),
            start=str(data["start"]),
            end=str(data["end"]),
            status=str(data.get("status") or STATUS_PENDING),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
            requester=(str(data.get("requester")) if data.get("requester") is not None else None),
            comment=(str(data.get("comment")) if data.get("comment") is not None else None),
            schedule_id=(str(data.get("schedule_id")) if data.get("schedule_id") is not None else None),
        )


@dataclass(frozen=True)
class SkippedOccurrence:
    date: str
    verdict: ValidationVerdict

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, **self.verdict.to_dict()}


@dataclass(frozen=True)
class ScheduleResult:
    schedule_id: str
    created: list[ReservationRecord] = field(default_factory=list)
    skipped: list[SkippedOccurrence] = field(default_factory=list)


class ReservationStorageError(RuntimeError):
    pass


class ReservationValidationError(ValueError):
    """Raised when a reservation request or approval fails validation."""

    def __init__(self, verdict: ValidationVerdict) -> None:
        super().__init__(verdict.message or "Reservation is not valid.")
        self.verdict = verdict


class ReservationYamlRepository:
    """Room reservations kept in a YAML file, with a YAML event log beside it.

    Validation runs against the rows read at request time and the conflict
    check is repeated on a fresh read right before the write. That closes the
    gap inside one process only: two processes writing the same directory are
    not serialized, since the store holds no file lock.
    """

    def __init__(self, base_dir: str | Path = "data", timezone: str = DEFAULT_TIMEZONE) -> None:
        self.base_dir = Path(base_dir)
        self.timezone = timezone
        self.reservations_file = self.base_dir / "reservations.yaml"
        self.log_file = self.base_dir / "reservation_events.yaml"
        self._ensure_files()

    def _ensure_files(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        for path in (self.reservations_file, self.log_file):
            if not path.exists():
                path.write_text("[]\n", encoding="utf-8")

    def _now(self) -> datetime:
        return datetime.now(pytz.timezone(self.timezone))

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            elif path != self.log_file:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            pass

        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or self._now()).isoformat(timespec="seconds")
        events = self._read_yaml_list(self.log_file)
        events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
        self._write_yaml_list(self.log_file, events)

    def get_events(self) -> list[dict[str, Any]]:
        return self._read_yaml_list(self.log_file)

    def _load_records(self, rows: list[dict[str, Any]]) -> list[ReservationRecord | None]:
        """Parse reservation rows, keeping positions; unreadable rows become ``None``."""
        records: list[ReservationRecord | None] = []
        for index, row in enumerate(rows):
            try:
                record = ReservationRecord.from_dict(row)
                record.to_interval()
                parse_calendar_date(record.date)
            except (KeyError, TypeError, ValueError) as error:
                reason = f"missing field {error}" if isinstance(error, KeyError) else str(error)
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(self.reservations_file.name),
                        "index": index,
                        "reason": reason,
                    },
                )
                records.append(None)
            else:
                records.append(record)
        return records

    def get_reservations(self) -> list[ReservationRecord]:
        rows = self._read_yaml_list(self.reservations_file)
        return [record for record in self._load_records(rows) if record is not None]

    def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        for record in self.get_reservations():
            if record.reservation_id == reservation_id:
                return record
        return None

    def find_reservations(
        self,
        room: str | None = None,
        date_text: str | None = None,
        status: str | None = None,
    ) -> list[ReservationRecord]:
        normalized_room = _normalize_room_name(room) if room is not None else None
        normalized_date = parse_calendar_date(date_text).isoformat() if date_text else None
        records = [
            record
            for record in self.get_reservations()
            if (normalized_room is None or record.room == normalized_room)
            and (normalized_date is None or record.date == normalized_date)
            and (status is None or record.status == status)
        ]
        return sorted(records, key=lambda record: (record.date, parse_time_of_day(record.start), record.room))

    def occupied_intervals(self, room: str, date_text: str) -> list[OccupiedInterval]:
        """Return the pending and approved intervals of ``room`` on ``date_text``, sorted by start."""
        normalized_date = parse_calendar_date(date_text).isoformat()
        return _blocking_intervals(self.get_reservations(), _normalize_room_name(room), normalized_date)

    def request_reservation(
        self,
        room: str,
        date_text: str,
        start: str,
        end: str,
        requester: str | None = None,
        comment: str | None = None,
        now: datetime | None = None,
        status: str = STATUS_PENDING,
        schedule_id: str | None = None,
    ) -> ReservationRecord:
        room = _normalize_room_name(room)
        normalized_date = parse_calendar_date(date_text).isoformat()
        start, end = str(start).strip(), str(end).strip()
        if status not in BLOCKING_STATUSES:
            raise ValueError(f"New reservations must be {STATUS_PENDING} or {STATUS_APPROVED}.")
        effective_now = now or self._now()

        verdict = validate_reservation(
            normalized_date,
            start,
            end,
            self.occupied_intervals(room, normalized_date),
            reference_now=effective_now,
            timezone=self.timezone,
        )
        if not verdict.valid:
            self._log_event(
                "RESERVATION_REFUSED",
                {
                    "room": room,
                    "date": normalized_date,
                    "start": start,
                    "end": end,
                    **verdict.to_dict(),
                },
                effective_now,
            )
            raise ReservationValidationError(verdict)

        record = ReservationRecord(
            reservation_id=str(uuid4()),
            room=room,
            date=normalized_date,
            start=start,
            end=end,
            status=status,
            created_at=effective_now,
            updated_at=effective_now,
            requester=requester,
            comment=comment,
            schedule_id=schedule_id,
        )
        self._insert_record(record)

        self._log_event(
            "RESERVATION_REQUESTED",
            {
                "reservation_id": record.reservation_id,
                "room": room,
                "date": normalized_date,
                "start": start,
                "end": end,
                "status": status,
                "requester": requester,
            },
            effective_now,
        )
        return record

    def _insert_record(self, record: ReservationRecord) -> None:
        rows = self._read_yaml_list(self.reservations_file)
        current = [record for record in self._load_records(rows) if record is not None]
        verdict = conflict_verdict(record.start, record.end, _blocking_intervals(current, record.room, record.date))
        if not verdict.valid:
            raise ReservationValidationError(verdict)

        rows.append(record.to_dict())
        self._write_yaml_list(self.reservations_file, rows)

    def approve(self, reservation_id: str, now: datetime | None = None) -> ReservationRecord:
        return self._transition(reservation_id, STATUS_APPROVED, now=now)

    def reject(self, reservation_id: str, comment: str | None = None, now: datetime | None = None) -> ReservationRecord:
        return self._transition(reservation_id, STATUS_REJECTED, comment=comment, now=now)

    def cancel(self, reservation_id: str, now: datetime | None = None) -> ReservationRecord:
        return self._transition(reservation_id, STATUS_CANCELLED, now=now)

    def _transition(
        self,
        reservation_id: str,
        new_status: str,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        effective_now = now or self._now()
        rows = self._read_yaml_list(self.reservations_file)
        records = self._load_records(rows)

        found_index = -1
        for index, record in enumerate(records):
            if record is not None and record.reservation_id == reservation_id:
                found_index = index
                break

        if found_index < 0:
            raise ValueError("reservation_id not found")

        current = records[found_index]
        if new_status not in _ALLOWED_TRANSITIONS.get(current.status, frozenset()):
            raise ValueError(f"Cannot change reservation status from {current.status} to {new_status}.")

        if new_status == STATUS_APPROVED:
            others = [record for index, record in enumerate(records) if record is not None and index != found_index]
            verdict = conflict_verdict(
                current.start,
                current.end,
                _blocking_intervals(others, current.room, current.date, statuses=frozenset({STATUS_APPROVED})),
            )
            if not verdict.valid:
                raise ReservationValidationError(verdict)

        updated = replace(
            current,
            status=new_status,
            updated_at=effective_now,
            comment=comment if comment is not None else current.comment,
        )
        rows[found_index] = updated.to_dict()
        self._write_yaml_list(self.reservations_file, rows)

        self._log_event(
            "RESERVATION_STATUS_CHANGED",
            {
                "reservation_id": reservation_id,
                "from": current.status,
                "to": new_status,
                "comment": comment,
            },
            effective_now,
        )
        return updated

    def mark_expired(self, now: datetime | None = None) -> list[ReservationRecord]:
        """Expire pending reservations whose end has already passed in the local timezone."""
        effective_now = now or self._now()
        local_now = local_wall_clock(effective_now, self.timezone)

        rows = self._read_yaml_list(self.reservations_file)
        expired: list[ReservationRecord] = []
        for index, record in enumerate(self._load_records(rows)):
            if record is None or record.status != STATUS_PENDING:
                continue
            ends_at = datetime.combine(parse_calendar_date(record.date), parse_time_of_day(record.end))
            if ends_at <= local_now:
                updated = replace(record, status=STATUS_EXPIRED, updated_at=effective_now)
                rows[index] = updated.to_dict()
                expired.append(updated)

        if not expired:
            return []

        self._write_yaml_list(self.reservations_file, rows)
        for record in expired:
            self._log_event(
                "RESERVATION_EXPIRED",
                {
                    "reservation_id": record.reservation_id,
                    "room": record.room,
                    "date": record.date,
                    "start": record.start,
                    "end": record.end,
                },
                effective_now,
            )
        return expired

    def create_schedule(
        self,
        room: str,
        first_date: str,
        start: str,
        end: str,
        recurrence: Recurrence | str,
        period: Period,
        now: datetime | None = None,
        requester: str | None = None,
        comment: str | None = None,
        skip_holidays: bool = True,
        holiday_country: str = HOLIDAY_COUNTRY,
    ) -> ScheduleResult:
        """Book every occurrence of a recurring class schedule as an approved reservation.

        Occurrences that fail validation are reported in ``skipped`` instead of
        aborting the whole schedule.
        """
        effective_now = now or self._now()
        recurrence = Recurrence(recurrence)
        occurrences = expand_schedule(
            parse_calendar_date(first_date),
            recurrence,
            period,
            skip_holidays=skip_holidays,
            country=holiday_country,
        )

        result = ScheduleResult(schedule_id=str(uuid4()))
        for day in occurrences:
            try:
                created = self.request_reservation(
                    room,
                    day.isoformat(),
                    start,
                    end,
                    requester=requester,
                    comment=comment,
                    now=effective_now,
                    status=STATUS_APPROVED,
                    schedule_id=result.schedule_id,
                )
            except ReservationValidationError as error:
                result.skipped.append(SkippedOccurrence(date=day.isoformat(), verdict=error.verdict))
                continue
            result.created.append(created)

        self._log_event(
            "SCHEDULE_CREATED",
            {
                "schedule_id": result.schedule_id,
                "room": _normalize_room_name(room),
                "recurrence": recurrence.value,
                "period": period.to_dict(),
                "created": len(result.created),
                "skipped": [item.date for item in result.skipped],
            },
            effective_now,
        )
        return result


def _blocking_intervals(
    records: list[ReservationRecord],
    room: str,
    date_text: str,
    statuses: frozenset[str] = BLOCKING_STATUSES,
) -> list[OccupiedInterval]:
    same_slot = [
        record
        for record in records
        if record.room == room and record.date == date_text and record.status in statuses
    ]
    same_slot.sort(key=lambda record: parse_time_of_day(record.start))
    return [record.to_interval() for record in same_slot]


def _normalize_room_name(room: str | None) -> str:
    if room is None:
        raise ValueError("room must not be None")

    normalized = str(room).strip()
    if not normalized:
        raise ValueError("room must not be empty")
    return normalized


def _as_date_text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return parse_calendar_date(str(value)).isoformat()
