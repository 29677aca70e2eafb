from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from rental_core.models.bookings import Booking
from rental_core.utils.datetime import utc_now

bookings = Booking.__table__


def insert_booking(conn: Connection, row: dict[str, Any]) -> None:
    now = utc_now()
    conn.execute(insert(bookings).values(version=1, created_at=now, updated_at=now, **row))


def update_booking_versioned(
    conn: Connection, booking_id: str, expected_version: int, values: dict[str, Any]
) -> bool:
    """
    Apply ``values`` only if the booking is still at ``expected_version``.

    Args:
        conn: Connection inside the caller's transaction
        booking_id: Booking to update
        expected_version: Version the caller read
        values: Columns to set

    Returns:
        bool: False when another writer got there first
    """
    result = conn.execute(
        update(bookings)
        .where(bookings.c.id == booking_id)
        .where(bookings.c.version == expected_version)
        .values(version=expected_version + 1, updated_at=utc_now(), **values)
    )
    return result.rowcount == 1


def set_booking_payment_status(
    conn: Connection,
    booking_id: str,
    payment_status: str,
    payment_id: Optional[str] = None,
) -> None:
    """
    Write the payment-status mirror (and optionally the linked payment id).

    Does not bump the booking version: the mirror is owned by the payment
    side and must not invalidate a concurrent owner/tenant transition.
    """
    values: dict[str, Any] = {"payment_status": payment_status, "updated_at": utc_now()}
    if payment_id is not None:
        values["payment_id"] = payment_id
    conn.execute(update(bookings).where(bookings.c.id == booking_id).values(**values))
