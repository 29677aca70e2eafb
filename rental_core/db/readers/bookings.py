"""Read queries for bookings."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.engine import Connection

from rental_core.db.records import BookingRecord, to_decimal
from rental_core.models.bookings import Booking
from rental_core.models.payments import Payment
from rental_core.models.status import (
    ACTIVE_BOOKING_STATUSES,
    PAYMENT_TO_BOOKING_STATUS,
    BookingPaymentStatus,
    BookingStatus,
    Role,
)

bookings = Booking.__table__
payments = Payment.__table__


def get_booking(
    conn: Connection, booking_id: str, for_update: bool = False
) -> Optional[BookingRecord]:
    stmt = select(bookings).where(bookings.c.id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().fetchone()
    return BookingRecord.from_row(row) if row else None


def find_overlapping_booking_id(
    conn: Connection,
    property_id: str,
    start: date,
    end: date,
    exclude_booking_id: Optional[str] = None,
) -> Optional[str]:
    """
    Return the id of a pending/approved booking on the property intersecting [start, end).

    Two half-open ranges [s1, e1) and [s2, e2) intersect iff s1 < e2 and s2 < e1.
    """
    conditions = [
        bookings.c.property_id == property_id,
        bookings.c.status.in_(ACTIVE_BOOKING_STATUSES),
        bookings.c.start_date < end,
        bookings.c.end_date > start,
    ]
    if exclude_booking_id is not None:
        conditions.append(bookings.c.id != exclude_booking_id)

    row = conn.execute(select(bookings.c.id).where(and_(*conditions)).limit(1)).fetchone()
    return row[0] if row else None


def list_active_ranges(
    conn: Connection, property_id: str, not_ended_before: date
) -> list[tuple[date, date, str]]:
    """List (start, end, status) for pending/approved bookings ending on or after a date."""
    rows = conn.execute(
        select(bookings.c.start_date, bookings.c.end_date, bookings.c.status)
        .where(bookings.c.property_id == property_id)
        .where(bookings.c.status.in_(ACTIVE_BOOKING_STATUSES))
        .where(bookings.c.end_date >= not_ended_before)
        .order_by(bookings.c.start_date)
    ).fetchall()
    return [(row[0], row[1], row[2]) for row in rows]


def _visibility_filter(user_id: str, role: str) -> Any:
    if role == Role.ADMIN.value:
        return None
    if role == Role.OWNER.value:
        return bookings.c.owner_id == user_id
    return bookings.c.tenant_id == user_id


def list_bookings_for_actor(
    conn: Connection,
    user_id: str,
    role: str,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[BookingRecord], int]:
    """
    Page through the bookings visible to a caller, newest first.

    Tenants see their own requests, owners see requests for their properties,
    admins see everything.

    Returns:
        Tuple of (bookings on the page, total matching count)
    """
    conditions = []
    visibility = _visibility_filter(user_id, role)
    if visibility is not None:
        conditions.append(visibility)
    if status:
        conditions.append(bookings.c.status == status)

    count_stmt = select(func.count()).select_from(bookings)
    stmt = select(bookings)
    if conditions:
        count_stmt = count_stmt.where(and_(*conditions))
        stmt = stmt.where(and_(*conditions))

    total = conn.execute(count_stmt).scalar_one()
    rows = (
        conn.execute(
            stmt.order_by(bookings.c.created_at.desc(), bookings.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .mappings()
        .fetchall()
    )
    return [BookingRecord.from_row(row) for row in rows], total


def booking_stats_for_actor(conn: Connection, user_id: str, role: str) -> dict[str, Any]:
    """
    Count bookings per status and sum the revenue of paid bookings.

    Returns:
        dict with "counts" (status -> count), "total" and "total_revenue"
    """
    visibility = _visibility_filter(user_id, role)

    count_stmt = select(bookings.c.status, func.count()).group_by(bookings.c.status)
    revenue_stmt = select(func.coalesce(func.sum(bookings.c.total_amount), 0)).where(
        bookings.c.payment_status == BookingPaymentStatus.PAID.value
    )
    if visibility is not None:
        count_stmt = count_stmt.where(visibility)
        revenue_stmt = revenue_stmt.where(visibility)

    counts = {status: count for status, count in conn.execute(count_stmt).fetchall()}
    revenue: Decimal = to_decimal(conn.execute(revenue_stmt).scalar_one())
    return {"counts": counts, "total": sum(counts.values()), "total_revenue": revenue}


def list_due_for_completion(conn: Connection, today: date, limit: int = 100) -> list[BookingRecord]:
    """Approved, paid bookings whose stay ended before ``today``."""
    rows = (
        conn.execute(
            select(bookings)
            .where(bookings.c.status == BookingStatus.APPROVED.value)
            .where(bookings.c.payment_status == BookingPaymentStatus.PAID.value)
            .where(bookings.c.end_date < today)
            .order_by(bookings.c.end_date)
            .limit(limit)
        )
        .mappings()
        .fetchall()
    )
    return [BookingRecord.from_row(row) for row in rows]


def list_mirror_mismatches(conn: Connection, limit: int = 100) -> list[tuple[str, str, str]]:
    """
    Find bookings whose payment_status disagrees with their linked payment.

    Returns:
        list of (booking_id, booking.payment_status, payment.status)
    """
    expected = case(PAYMENT_TO_BOOKING_STATUS, value=payments.c.status)
    rows = conn.execute(
        select(bookings.c.id, bookings.c.payment_status, payments.c.status)
        .join(payments, payments.c.id == bookings.c.payment_id)
        .where(bookings.c.payment_status != expected)
        .limit(limit)
    ).fetchall()
    return [(row[0], row[1], row[2]) for row in rows]
