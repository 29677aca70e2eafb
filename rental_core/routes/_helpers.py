"""
Internal helpers shared by the route handlers.

Records are serialized here rather than through response models so that
money stays a decimal string on the wire.
"""

from __future__ import annotations

import dataclasses
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from rental_core.db.records import BookingRecord, PaymentRecord
from rental_core.errors import Forbidden
from rental_core.services.actors import Actor

ADMIN_ONLY_PAYMENT_FIELDS = ("provider_payload",)


def to_jsonable(value: Any) -> Any:
    """Convert dates to ISO strings and Decimals to strings, recursively."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def booking_to_dict(booking: BookingRecord) -> dict[str, Any]:
    return to_jsonable(dataclasses.asdict(booking))


def payment_to_dict(payment: PaymentRecord, actor: Actor) -> dict[str, Any]:
    """
    Serialize a payment for ``actor``.

    Raw provider payloads are only shown to admins and the system.
    """
    data = dataclasses.asdict(payment)
    data["refunded_total"] = payment.refunded_total
    if not actor.is_privileged:
        for name in ADMIN_ONLY_PAYMENT_FIELDS:
            data.pop(name, None)
    return to_jsonable(data)


def page_envelope(items: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    pages = (total + limit - 1) // limit if limit else 0
    return {
        "items": items,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": pages},
    }


def require_privileged(actor: Actor) -> None:
    """
    Raises:
        Forbidden: actor is neither an admin nor the system
    """
    if not actor.is_privileged:
        raise Forbidden("This action requires an admin or system caller")
