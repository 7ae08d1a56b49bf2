from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from room_booking import ReservationValidationError, ReservationYamlRepository, validate_reservation

mcp = FastMCP(
    "Room Booking MCP Server",
    instructions="Check room availability and request reservations through the room_booking project.",
    json_response=True,
)


def _repository() -> ReservationYamlRepository:
    data_dir = os.environ.get("BOOKING_DATA_DIR") or Path(__file__).parent / "data"
    return ReservationYamlRepository(data_dir)


@mcp.resource("booking://rooms")
def list_rooms() -> list[str]:
    """List rooms that have at least one reservation on record."""
    return sorted({record.room for record in _repository().get_reservations()})


@mcp.tool()
def list_occupied_intervals(room: str, date: str) -> list[dict[str, str]]:
    """Return pending and approved time ranges for a room on a YYYY-MM-DD date."""
    return [interval.to_dict() for interval in _repository().occupied_intervals(room, date)]


@mcp.tool()
def validate_reservation_slot(room: str, date: str, start: str, end: str) -> dict[str, Any]:
    """Check whether a room can be booked from start to end (HH:MM) on date, without booking it."""
    repository = _repository()
    verdict = validate_reservation(
        date,
        start,
        end,
        repository.occupied_intervals(room, date),
        timezone=repository.timezone,
    )
    return verdict.to_dict()


@mcp.tool()
def request_room_reservation(
    room: str,
    date: str,
    start: str,
    end: str,
    requester: str | None = None,
) -> dict[str, Any]:
    """Create a pending reservation, or return the reason it was refused."""
    try:
        created = _repository().request_reservation(room, date, start, end, requester=requester)
    except ReservationValidationError as error:
        return {"ok": False, "verdict": error.verdict.to_dict()}
    return {"ok": True, "reservation": created.to_dict()}


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
