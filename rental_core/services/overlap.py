"""Date-range conflict checks against pending and approved bookings."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from sqlalchemy.engine import Connection

from rental_core.db.readers.bookings import find_overlapping_booking_id, list_active_ranges


def ranges_overlap(first: tuple[date, date], second: tuple[date, date]) -> bool:
    """
    Half-open ranges [s1, e1) and [s2, e2) overlap iff s1 < e2 and s2 < e1.

    A checkout on the day of the next check-in is not an overlap.
    """
    return first[0] < second[1] and second[0] < first[1]


def has_overlap(
    conn: Connection,
    property_id: str,
    start: date,
    end: date,
    exclude_booking_id: Optional[str] = None,
) -> bool:
    """
    Check whether [start, end) collides with a pending or approved booking.

    Must run on the same connection and inside the same property lock as the
    insert that depends on it.

    Args:
        conn: Connection inside the creating transaction
        property_id: Property being booked
        start: First night
        end: Checkout date
        exclude_booking_id: Booking to ignore (when re-validating an existing one)

    Returns:
        bool: True if the range is already taken
    """
    conflict = find_overlapping_booking_id(conn, property_id, start, end, exclude_booking_id)
    return conflict is not None


def unavailable_ranges(conn: Connection, property_id: str, today: date) -> list[dict[str, Any]]:
    """Pending/approved ranges on a property that have not ended before ``today``."""
    return [
        {"start_date": start, "end_date": end, "status": status}
        for start, end, status in list_active_ranges(conn, property_id, today)
    ]
