from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import pytz
from flask import Flask, jsonify, request

from .recurrence import Period
from .time_parsing import parse_calendar_date
from .validation import DEFAULT_TIMEZONE, validate_reservation
from .yaml_store import (
    ALL_STATUSES,
    ReservationStorageError,
    ReservationValidationError,
    ReservationYamlRepository,
)


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    timezone: str = DEFAULT_TIMEZONE,
) -> Flask:
    app = Flask(__name__)
    repository = ReservationYamlRepository(data_dir, timezone=timezone)
    clock: Callable[[], datetime] = now_provider or (lambda: datetime.now(pytz.timezone(timezone)))

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.errorhandler(ReservationStorageError)
    def handle_storage_error(error: ReservationStorageError) -> Any:
        return jsonify({"ok": False, "message": "The reservation store could not be written."}), 500

    @app.get("/api/rooms/<room>/occupied")
    def get_occupied(room: str) -> Any:
        date_text = str(request.args.get("date", "")).strip()
        if not date_text:
            return jsonify({"ok": False, "message": "date is required."}), 400

        try:
            intervals = repository.occupied_intervals(room, date_text)
        except ValueError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        return jsonify(
            {
                "ok": True,
                "room": room,
                "date": parse_calendar_date(date_text).isoformat(),
                "occupied": [interval.to_dict() for interval in intervals],
            }
        )

    @app.post("/api/reservations/validate")
    def validate() -> Any:
        payload = _json_object()
        fields, error_response = _required_fields(payload, ("room", "date", "start", "end"))
        if error_response is not None:
            return error_response

        try:
            verdict = validate_reservation(
                fields["date"],
                fields["start"],
                fields["end"],
                repository.occupied_intervals(fields["room"], fields["date"]),
                reference_now=clock(),
                timezone=timezone,
            )
        except ValueError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        return jsonify({"ok": True, "verdict": verdict.to_dict()})

    @app.get("/api/reservations")
    def list_reservations() -> Any:
        status = request.args.get("status")
        if status is not None and status not in ALL_STATUSES:
            return jsonify({"ok": False, "message": f"Unknown status: {status}"}), 400

        try:
            records = repository.find_reservations(
                room=request.args.get("room"),
                date_text=request.args.get("date"),
                status=status,
            )
        except ValueError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        return jsonify({"ok": True, "reservations": [record.to_dict() for record in records]})

    @app.post("/api/reservations")
    def create_reservation() -> Any:
        payload = _json_object()
        fields, error_response = _required_fields(payload, ("room", "date", "start", "end"))
        if error_response is not None:
            return error_response

        try:
            created = repository.request_reservation(
                fields["room"],
                fields["date"],
                fields["start"],
                fields["end"],
                requester=_optional_text(payload, "requester"),
                comment=_optional_text(payload, "comment"),
                now=clock(),
            )
        except ReservationValidationError as error:
            return jsonify({"ok": False, "message": str(error), "verdict": error.verdict.to_dict()}), 409
        except ValueError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        return jsonify({"ok": True, "reservation": created.to_dict()}), 201

    @app.post("/api/reservations/<reservation_id>/approve")
    def approve_reservation(reservation_id: str) -> Any:
        return _change_status(reservation_id, lambda: repository.approve(reservation_id, now=clock()))

    @app.post("/api/reservations/<reservation_id>/reject")
    def reject_reservation(reservation_id: str) -> Any:
        payload = _json_object()
        comment = _optional_text(payload, "comment")
        return _change_status(reservation_id, lambda: repository.reject(reservation_id, comment=comment, now=clock()))

    @app.post("/api/reservations/<reservation_id>/cancel")
    def cancel_reservation(reservation_id: str) -> Any:
        return _change_status(reservation_id, lambda: repository.cancel(reservation_id, now=clock()))

    def _change_status(reservation_id: str, action: Callable[[], Any]) -> Any:
        if repository.get_reservation(reservation_id) is None:
            return jsonify({"ok": False, "message": "Reservation not found."}), 404

        try:
            updated = action()
        except ReservationValidationError as error:
            return jsonify({"ok": False, "message": str(error), "verdict": error.verdict.to_dict()}), 409
        except ValueError as error:
            return jsonify({"ok": False, "message": str(error)}), 409

        return jsonify({"ok": True, "reservation": updated.to_dict()})

    @app.post("/api/schedules")
    def create_schedule() -> Any:
        payload = _json_object()
        fields, error_response = _required_fields(
            payload,
            ("room", "first_date", "start", "end", "recurrence", "period_start", "period_end"),
        )
        if error_response is not None:
            return error_response

        try:
            period = Period.from_dict(
                {
                    "name": payload.get("period_name"),
                    "start_date": fields["period_start"],
                    "end_date": fields["period_end"],
                }
            )
            result = repository.create_schedule(
                fields["room"],
                fields["first_date"],
                fields["start"],
                fields["end"],
                fields["recurrence"],
                period,
                now=clock(),
                requester=_optional_text(payload, "requester"),
                comment=_optional_text(payload, "comment"),
            )
        except ValueError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        return (
            jsonify(
                {
                    "ok": True,
                    "schedule_id": result.schedule_id,
                    "created": [record.to_dict() for record in result.created],
                    "skipped": [item.to_dict() for item in result.skipped],
                }
            ),
            201,
        )

    @app.post("/api/maintenance/mark-expired")
    def mark_expired() -> Any:
        expired = repository.mark_expired(now=clock())
        return jsonify(
            {
                "ok": True,
                "updated": len(expired),
                "details": [record.to_dict() for record in expired],
            }
        )

    return app


def _json_object() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _required_fields(payload: dict[str, Any], names: tuple[str, ...]) -> tuple[dict[str, str], Any]:
    fields = {name: str(payload.get(name) or "").strip() for name in names}
    missing = [name for name, value in fields.items() if not value]
    if missing:
        return fields, (jsonify({"ok": False, "message": f"Missing required fields: {', '.join(missing)}"}), 400)
    return fields, None


def _optional_text(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
