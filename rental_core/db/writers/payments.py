from __future__ import annotations

from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from rental_core.models.payments import Payment, PaymentReference, PaymentRefund
from rental_core.utils.datetime import utc_now

payments = Payment.__table__
refunds = PaymentRefund.__table__
references = PaymentReference.__table__


def insert_payment(conn: Connection, row: dict[str, Any]) -> None:
    now = utc_now()
    conn.execute(insert(payments).values(version=1, created_at=now, updated_at=now, **row))


def update_payment_versioned(
    conn: Connection, payment_id: str, expected_version: int, values: dict[str, Any]
) -> bool:
    """
    Conditionally update a payment on an unchanged version.

    This is the compare-and-set every payment status change goes through.

    Returns:
        bool: True if the row was updated, False on a version conflict
    """
    result = conn.execute(
        update(payments)
        .where(payments.c.id == payment_id)
        .where(payments.c.version == expected_version)
        .values(version=expected_version + 1, updated_at=utc_now(), **values)
    )
    return result.rowcount == 1


def insert_refund(conn: Connection, row: dict[str, Any]) -> None:
    now = utc_now()
    conn.execute(insert(refunds).values(created_at=now, updated_at=now, **row))


def update_refund(conn: Connection, refund_row_id: str, values: dict[str, Any]) -> None:
    conn.execute(
        update(refunds)
        .where(refunds.c.id == refund_row_id)
        .values(updated_at=utc_now(), **values)
    )


def retire_reference(conn: Connection, payment_id: str, method: str, provider_ref: str) -> None:
    """Keep a superseded provider reference resolvable to its payment."""
    conn.execute(
        insert(references).values(
            payment_id=payment_id,
            method=method,
            provider_ref=provider_ref,
            retired_at=utc_now(),
        )
    )
