"""
Immutable snapshots of database rows handed between readers, services and routes.

Readers build these from ``Row._mapping``; services never mutate them and
instead write through the writers and re-read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from rental_core.models.status import OPEN_PAYMENT_STATUSES, TERMINAL_PAYMENT_STATUSES


def to_decimal(value: Any) -> Decimal:
    """Coerce a numeric column or JSON string value to Decimal."""
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


@dataclass(frozen=True)
class PropertyRecord:
    id: str
    owner_id: str
    monthly_rate: Decimal
    currency: str
    is_available: bool
    title: Optional[str] = None
    min_lease_months: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PropertyRecord":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            monthly_rate=to_decimal(row["monthly_rate"]),
            currency=row["currency"],
            is_available=bool(row["is_available"]),
            title=row.get("title"),
            min_lease_months=row.get("min_lease_months"),
        )


@dataclass(frozen=True)
class BookingRecord:
    id: str
    property_id: str
    tenant_id: str
    owner_id: str
    start_date: date
    end_date: date
    rent_amount: Decimal
    service_fee: Decimal
    total_amount: Decimal
    currency: str
    status: str
    payment_status: str
    version: int
    occupants: dict[str, int] = field(default_factory=dict)
    message: Optional[str] = None
    payment_id: Optional[str] = None
    owner_response: Optional[dict[str, Any]] = None
    cancellation: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BookingRecord":
        return cls(
            id=row["id"],
            property_id=row["property_id"],
            tenant_id=row["tenant_id"],
            owner_id=row["owner_id"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            rent_amount=to_decimal(row["rent_amount"]),
            service_fee=to_decimal(row["service_fee"]),
            total_amount=to_decimal(row["total_amount"]),
            currency=row["currency"],
            status=row["status"],
            payment_status=row["payment_status"],
            version=row["version"],
            occupants=row.get("occupants") or {},
            message=row.get("message"),
            payment_id=row.get("payment_id"),
            owner_response=row.get("owner_response"),
            cancellation=row.get("cancellation"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.tenant_id, self.owner_id)


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    booking_id: str
    user_id: str
    owner_id: str
    amount: Decimal
    currency: str
    method: str
    status: str
    version: int
    breakdown: dict[str, Any] = field(default_factory=dict)
    provider_ref: Optional[str] = None
    refund: Optional[dict[str, Any]] = None
    gateway_data: Optional[dict[str, Any]] = None
    provider_payload: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    failure_reason: Optional[str] = None
    invoice_number: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PaymentRecord":
        return cls(
            id=row["id"],
            booking_id=row["booking_id"],
            user_id=row["user_id"],
            owner_id=row["owner_id"],
            amount=to_decimal(row["amount"]),
            currency=row["currency"],
            method=row["method"],
            status=row["status"],
            version=row["version"],
            breakdown=row.get("breakdown") or {},
            provider_ref=row.get("provider_ref"),
            refund=row.get("refund"),
            gateway_data=row.get("gateway_data"),
            provider_payload=row.get("provider_payload"),
            metadata=row.get("metadata"),
            failure_reason=row.get("failure_reason"),
            invoice_number=row.get("invoice_number"),
            paid_at=row.get("paid_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_PAYMENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def refunded_total(self) -> Decimal:
        if not self.refund:
            return Decimal("0")
        return to_decimal(self.refund.get("amount"))
