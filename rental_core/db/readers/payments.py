"""Read queries for payments and refunds."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Connection

from rental_core.db.records import PaymentRecord
from rental_core.models.payments import Payment, PaymentReference, PaymentRefund
from rental_core.models.status import OPEN_PAYMENT_STATUSES, PaymentStatus, Role

payments = Payment.__table__
refunds = PaymentRefund.__table__
references = PaymentReference.__table__


def get_payment(conn: Connection, payment_id: str) -> Optional[PaymentRecord]:
    row = conn.execute(select(payments).where(payments.c.id == payment_id)).mappings().fetchone()
    return PaymentRecord.from_row(row) if row else None


def get_payment_by_reference(
    conn: Connection, method: str, provider_ref: str
) -> Optional[PaymentRecord]:
    """
    Resolve a payment from a gateway transaction reference.

    References are only unique inside one gateway's namespace, so the
    method is part of the lookup.
    """
    row = (
        conn.execute(
            select(payments)
            .where(payments.c.method == method)
            .where(payments.c.provider_ref == provider_ref)
        )
        .mappings()
        .fetchone()
    )
    return PaymentRecord.from_row(row) if row else None


def get_payment_by_retired_reference(
    conn: Connection, method: str, provider_ref: str
) -> Optional[PaymentRecord]:
    """Resolve a payment from a reference it no longer carries."""
    row = (
        conn.execute(
            select(payments)
            .join(references, references.c.payment_id == payments.c.id)
            .where(references.c.method == method)
            .where(references.c.provider_ref == provider_ref)
        )
        .mappings()
        .fetchone()
    )
    return PaymentRecord.from_row(row) if row else None


def get_open_payment_for_booking(conn: Connection, booking_id: str) -> Optional[PaymentRecord]:
    row = (
        conn.execute(
            select(payments)
            .where(payments.c.booking_id == booking_id)
            .where(payments.c.status.in_(OPEN_PAYMENT_STATUSES))
        )
        .mappings()
        .fetchone()
    )
    return PaymentRecord.from_row(row) if row else None


def list_payments_for_actor(
    conn: Connection,
    user_id: str,
    role: str,
    status: Optional[str] = None,
    method: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[PaymentRecord], int]:
    """
    Page through payment history visible to a caller, newest first.

    Payers see what they paid, owners what they received, admins everything.

    Returns:
        Tuple of (payments on the page, total matching count)
    """
    conditions: list[Any] = []
    if role == Role.OWNER.value:
        conditions.append(payments.c.owner_id == user_id)
    elif role != Role.ADMIN.value:
        conditions.append(payments.c.user_id == user_id)
    if status:
        conditions.append(payments.c.status == status)
    if method:
        conditions.append(payments.c.method == method)

    where = and_(*conditions) if conditions else None
    count_stmt = select(func.count()).select_from(payments)
    stmt = select(payments)
    if where is not None:
        count_stmt = count_stmt.where(where)
        stmt = stmt.where(where)

    total = conn.execute(count_stmt).scalar_one()
    rows = (
        conn.execute(
            stmt.order_by(payments.c.created_at.desc(), payments.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .mappings()
        .fetchall()
    )
    return [PaymentRecord.from_row(row) for row in rows], total


def list_stale_processing(
    conn: Connection, updated_before: datetime, limit: int = 100
) -> list[PaymentRecord]:
    """Processing payments untouched since ``updated_before``, oldest first."""
    rows = (
        conn.execute(
            select(payments)
            .where(payments.c.status == PaymentStatus.PROCESSING.value)
            .where(payments.c.updated_at < updated_before)
            .order_by(payments.c.updated_at)
            .limit(limit)
        )
        .mappings()
        .fetchall()
    )
    return [PaymentRecord.from_row(row) for row in rows]


def get_refund_by_key(conn: Connection, idempotency_key: str) -> Optional[dict[str, Any]]:
    row = (
        conn.execute(select(refunds).where(refunds.c.idempotency_key == idempotency_key))
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None


def sum_reserved_refunds(conn: Connection, payment_id: str) -> Any:
    """Total of refunds still in flight (reserved but not completed) for a payment."""
    return conn.execute(
        select(func.coalesce(func.sum(refunds.c.amount), 0))
        .where(refunds.c.payment_id == payment_id)
        .where(refunds.c.status == "pending")
    ).scalar_one()

