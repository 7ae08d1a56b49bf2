import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path
from unittest import mock

import yaml

from room_booking import (
    OccupiedInterval,
    Period,
    ReasonKind,
    ReservationValidationError,
    ReservationYamlRepository,
    validate_reservation,
)
from room_booking.yaml_store import (
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_REJECTED,
)

NOW = datetime(2024, 3, 20, 9, 0)


class RepositoryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._temp_dir.name) / "data"
        self.repo = ReservationYamlRepository(self.data_dir)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def event_types(self) -> list[str]:
        return [event["event_type"] for event in self.repo.get_events()]


class TestRequestReservation(RepositoryTestCase):
    def test_creates_pending_reservation(self) -> None:
        created = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", requester="ana", now=NOW)

        self.assertEqual(created.status, STATUS_PENDING)
        self.assertEqual(created.room, "Sala A")
        self.assertEqual(created.requester, "ana")
        self.assertEqual(self.repo.get_reservation(created.reservation_id), created)
        self.assertEqual(self.repo.occupied_intervals("Sala A", "2024-03-21"), [OccupiedInterval("09:00", "10:30")])
        self.assertIn("RESERVATION_REQUESTED", self.event_types())

    def test_files_are_created(self) -> None:
        self.assertTrue((self.data_dir / "reservations.yaml").exists())
        self.assertTrue((self.data_dir / "reservation_events.yaml").exists())

    def test_overlap_in_same_room_is_refused(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)

        with self.assertRaises(ReservationValidationError) as context:
            self.repo.request_reservation("Sala A", "2024-03-21", "10:00", "11:00", now=NOW)

        verdict = context.exception.verdict
        self.assertEqual(verdict.reason_kind, ReasonKind.SCHEDULE_CONFLICT)
        self.assertEqual(verdict.conflicting_range, "09:00 - 10:30")
        self.assertEqual(len(self.repo.get_reservations()), 1)
        self.assertIn("RESERVATION_REFUSED", self.event_types())

    def test_other_room_date_and_back_to_back_are_allowed(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        self.repo.request_reservation("Sala B", "2024-03-21", "09:00", "10:30", now=NOW)
        self.repo.request_reservation("Sala A", "2024-03-22", "09:00", "10:30", now=NOW)
        self.repo.request_reservation("Sala A", "2024-03-21", "10:30", "11:00", now=NOW)

        self.assertEqual(len(self.repo.get_reservations()), 4)

    def test_past_date_is_refused(self) -> None:
        with self.assertRaises(ReservationValidationError) as context:
            self.repo.request_reservation("Sala A", "2024-03-19", "09:00", "10:00", now=NOW)
        self.assertEqual(context.exception.verdict.reason_kind, ReasonKind.PAST_DATE)

    def test_malformed_time_raises_value_error(self) -> None:
        with self.assertRaises(ValueError) as context:
            self.repo.request_reservation("Sala A", "2024-03-21", "9am", "10:00", now=NOW)
        self.assertNotIsInstance(context.exception, ReservationValidationError)

    def test_empty_room_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.repo.request_reservation("  ", "2024-03-21", "09:00", "10:00", now=NOW)

    def test_occupied_intervals_are_sorted_by_start(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "15:00", "17:00", now=NOW)
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)

        self.assertEqual(
            self.repo.occupied_intervals("Sala A", "2024-03-21"),
            [OccupiedInterval("09:00", "10:30"), OccupiedInterval("15:00", "17:00")],
        )

    def test_stale_snapshot_is_caught_before_write(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)

        with mock.patch.object(self.repo, "occupied_intervals", return_value=[]):
            with self.assertRaises(ReservationValidationError):
                self.repo.request_reservation("Sala A", "2024-03-21", "10:00", "11:00", now=NOW)

        self.assertEqual(len(self.repo.get_reservations()), 1)

    def test_writers_in_separate_processes_are_not_serialized(self) -> None:
        # Both repositories read the same empty file before either one writes.
        first = self.repo
        second = ReservationYamlRepository(self.data_dir)
        self.assertTrue(
            validate_reservation("2024-03-21", "09:00", "10:30", first.occupied_intervals("Sala A", "2024-03-21"), NOW).valid
        )
        self.assertTrue(
            validate_reservation("2024-03-21", "10:00", "11:00", second.occupied_intervals("Sala A", "2024-03-21"), NOW).valid
        )
        stale_rows = second._read_yaml_list(second.reservations_file)
        read_yaml_list = second._read_yaml_list

        def read_stale_reservations(path: Path) -> list[dict]:
            if path == second.reservations_file:
                return [dict(row) for row in stale_rows]
            return read_yaml_list(path)

        first.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        with mock.patch.object(second, "_read_yaml_list", side_effect=read_stale_reservations):
            second.request_reservation("Sala A", "2024-03-21", "10:00", "11:00", now=NOW)

        # No file lock: the last writer replaces the file built from its own snapshot.
        stored = ReservationYamlRepository(self.data_dir).get_reservations()
        self.assertEqual([(record.start, record.end) for record in stored], [("10:00", "11:00")])

    def test_find_reservations_trims_room_filter(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        self.repo.request_reservation("Sala B", "2024-03-21", "09:00", "10:30", now=NOW)

        found = self.repo.find_reservations(room="  Sala A ", date_text="2024-03-21")

        self.assertEqual([record.room for record in found], ["Sala A"])
        with self.assertRaises(ValueError):
            self.repo.find_reservations(room="   ")


class TestStatusTransitions(RepositoryTestCase):
    def test_cancel_frees_the_slot(self) -> None:
        created = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        cancelled = self.repo.cancel(created.reservation_id, now=NOW)

        self.assertEqual(cancelled.status, STATUS_CANCELLED)
        self.assertEqual(self.repo.occupied_intervals("Sala A", "2024-03-21"), [])
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)

    def test_reject_stores_comment_and_frees_the_slot(self) -> None:
        created = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        rejected = self.repo.reject(created.reservation_id, comment="room under maintenance", now=NOW)

        self.assertEqual(rejected.status, STATUS_REJECTED)
        self.assertEqual(self.repo.get_reservation(created.reservation_id).comment, "room under maintenance")
        self.assertEqual(self.repo.occupied_intervals("Sala A", "2024-03-21"), [])

    def test_approved_reservation_still_blocks(self) -> None:
        created = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        approved = self.repo.approve(created.reservation_id, now=NOW)

        self.assertEqual(approved.status, STATUS_APPROVED)
        self.assertEqual(len(self.repo.occupied_intervals("Sala A", "2024-03-21")), 1)
        self.assertIn("RESERVATION_STATUS_CHANGED", self.event_types())

    def test_illegal_transition_raises(self) -> None:
        created = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        self.repo.cancel(created.reservation_id, now=NOW)

        with self.assertRaises(ValueError):
            self.repo.approve(created.reservation_id, now=NOW)

    def test_unknown_reservation_raises(self) -> None:
        with self.assertRaises(ValueError):
            self.repo.approve("missing", now=NOW)

    def test_approve_refuses_overlap_written_by_another_process(self) -> None:
        # Another writer appended an overlapping row behind this repository's back.
        first = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        second = ReservationYamlRepository(self.data_dir)
        rows = second._read_yaml_list(second.reservations_file)
        intruder = dict(rows[0], reservation_id="intruder", start="10:00", end="11:00")
        rows.append(intruder)
        second._write_yaml_list(second.reservations_file, rows)

        self.repo.approve(first.reservation_id, now=NOW)
        with self.assertRaises(ReservationValidationError) as context:
            self.repo.approve("intruder", now=NOW)
        self.assertEqual(context.exception.verdict.conflicting_range, "09:00 - 10:30")


class TestMarkExpired(RepositoryTestCase):
    def test_expires_only_finished_pending_reservations(self) -> None:
        finished = self.repo.request_reservation("Sala A", "2024-03-21", "08:00", "09:00", now=NOW)
        upcoming = self.repo.request_reservation("Sala A", "2024-03-21", "10:00", "11:00", now=NOW)
        approved = self.repo.request_reservation("Sala B", "2024-03-20", "09:30", "10:00", now=NOW)
        self.repo.approve(approved.reservation_id, now=NOW)

        expired = self.repo.mark_expired(now=datetime(2024, 3, 21, 9, 0))

        self.assertEqual([record.reservation_id for record in expired], [finished.reservation_id])
        self.assertEqual(self.repo.get_reservation(finished.reservation_id).status, STATUS_EXPIRED)
        self.assertEqual(self.repo.get_reservation(upcoming.reservation_id).status, STATUS_PENDING)
        self.assertEqual(self.repo.get_reservation(approved.reservation_id).status, STATUS_APPROVED)
        self.assertIn("RESERVATION_EXPIRED", self.event_types())

    def test_nothing_to_expire(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "08:00", "09:00", now=NOW)
        self.assertEqual(self.repo.mark_expired(now=NOW), [])


class TestCreateSchedule(RepositoryTestCase):
    def test_weekly_schedule_books_approved_occurrences(self) -> None:
        period = Period("2024-1", date(2024, 4, 22), date(2024, 5, 15))
        self.repo.request_reservation("Sala A", "2024-05-08", "09:30", "10:00", now=NOW)

        result = self.repo.create_schedule("Sala A", "2024-04-24", "09:00", "10:30", "weekly", period, now=NOW)

        self.assertEqual([record.date for record in result.created], ["2024-04-24", "2024-05-15"])
        self.assertTrue(all(record.status == STATUS_APPROVED for record in result.created))
        self.assertTrue(all(record.schedule_id == result.schedule_id for record in result.created))
        self.assertEqual(len(result.skipped), 1)
        self.assertEqual(result.skipped[0].date, "2024-05-08")
        self.assertEqual(result.skipped[0].verdict.reason_kind, ReasonKind.SCHEDULE_CONFLICT)
        self.assertIn("SCHEDULE_CREATED", self.event_types())

    def test_past_occurrences_are_skipped(self) -> None:
        period = Period("2024-1", date(2024, 3, 4), date(2024, 3, 31))
        result = self.repo.create_schedule("Sala A", "2024-03-13", "09:00", "10:00", "weekly", period, now=NOW)

        self.assertEqual([item.date for item in result.skipped], ["2024-03-13"])
        self.assertEqual(result.skipped[0].verdict.reason_kind, ReasonKind.PAST_DATE)
        self.assertEqual([record.date for record in result.created], ["2024-03-20", "2024-03-27"])


class TestYamlRecovery(RepositoryTestCase):
    def test_corrupted_file_is_backed_up_and_reset(self) -> None:
        (self.data_dir / "reservations.yaml").write_text("key: [unclosed\n", encoding="utf-8")

        self.assertEqual(self.repo.get_reservations(), [])
        backups = list(self.data_dir.glob("reservations.corrupt.*.yaml"))
        self.assertEqual(len(backups), 1)
        self.assertIn("YAML_RECOVERED", self.event_types())

    def test_non_mapping_rows_are_skipped(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        path = self.data_dir / "reservations.yaml"
        rows = yaml.safe_load(path.read_text(encoding="utf-8"))
        rows.append("not a mapping")
        path.write_text(yaml.safe_dump(rows, allow_unicode=True), encoding="utf-8")

        self.assertEqual(len(self.repo.get_reservations()), 1)
        self.assertIn("YAML_ROW_SKIPPED", self.event_types())

    def _append_raw_row(self, row: dict) -> None:
        path = self.data_dir / "reservations.yaml"
        rows = yaml.safe_load(path.read_text(encoding="utf-8"))
        rows.append(row)
        path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")

    def test_row_with_empty_interval_does_not_block_the_room(self) -> None:
        booked = self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        self._append_raw_row(dict(booked.to_dict(), reservation_id="broken", start="12:00", end="12:00"))

        self.assertEqual(self.repo.occupied_intervals("Sala A", "2024-03-21"), [OccupiedInterval("09:00", "10:30")])
        created = self.repo.request_reservation("Sala A", "2024-03-21", "14:00", "15:00", now=NOW)
        self.repo.approve(created.reservation_id, now=NOW)
        expired = self.repo.mark_expired(now=datetime(2024, 3, 21, 11, 0))
        self.assertEqual([record.reservation_id for record in expired], [booked.reservation_id])

        skipped = [event for event in self.repo.get_events() if event["event_type"] == "YAML_ROW_SKIPPED"]
        self.assertTrue(skipped)
        self.assertEqual(skipped[0]["payload"]["file"], "reservations.yaml")
        self.assertEqual(skipped[0]["payload"]["index"], 1)
        raw_rows = yaml.safe_load((self.data_dir / "reservations.yaml").read_text(encoding="utf-8"))
        self.assertIn("broken", [row["reservation_id"] for row in raw_rows])

    def test_row_with_missing_fields_is_skipped(self) -> None:
        self.repo.request_reservation("Sala A", "2024-03-21", "09:00", "10:30", now=NOW)
        self._append_raw_row({"room": "Sala A", "date": "2024-03-21"})

        self.assertEqual(len(self.repo.get_reservations()), 1)
        self.assertEqual(len(self.repo.find_reservations(room="Sala A")), 1)
        reasons = [event["payload"]["reason"] for event in self.repo.get_events() if event["event_type"] == "YAML_ROW_SKIPPED"]
        self.assertIn("missing field 'reservation_id'", reasons)


if __name__ == "__main__":
    unittest.main()
