"""
Test doubles and seed helpers shared across the suite.

Imported by tests after ``tests/conftest.py`` has pinned the environment.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.engine import Engine

from rental_core.db.records import BookingRecord, PaymentRecord
from rental_core.db.writers.properties import upsert_properties
from rental_core.errors import GatewayError
from rental_core.gateways.base import (
    Gateway,
    GatewayAdapter,
    InitiationResult,
    PayerInfo,
    VerificationResult,
    VerificationStatus,
    WebhookNotification,
)
from rental_core.gateways.registry import GatewayRegistry
from rental_core.services.actors import Actor
from rental_core.services.bookings import BookingService
from rental_core.services.events import AuditSink, Notifier
from rental_core.services.ledger import PaymentLedger
from rental_core.services.reconciliation import ReconciliationCoordinator

PROPERTY_ID = "prop-1"
OWNER = Actor(user_id="owner-1", role="owner")
TENANT = Actor(user_id="tenant-1", role="tenant")
OTHER_TENANT = Actor(user_id="tenant-2", role="tenant")
ADMIN = Actor(user_id="admin-1", role="admin")

# Service-level scenarios pin "today" before the stay
TODAY = date(2024, 5, 1)
STAY_START = date(2024, 6, 1)
STAY_END = date(2024, 6, 10)


class RecordingNotifier(Notifier):
    """Keeps emitted events in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class RecordingAudit(AuditSink):
    """Keeps audit records in memory."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def record(
        self,
        action: str,
        target_id: str,
        target_type: str,
        performed_by: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = "low",
    ) -> None:
        self.records.append(
            {
                "action": action,
                "target_id": target_id,
                "target_type": target_type,
                "performed_by": performed_by,
                "details": details or {},
                "severity": severity,
            }
        )

    def actions(self) -> list[str]:
        return [entry["action"] for entry in self.records]


class FakeGateway(GatewayAdapter):
    """
    Scriptable in-memory gateway.

    With ``mints_reference`` set, references are minted as TX-1, TX-2, ...
    before initiation, like the mobile-money provider. Otherwise initiate()
    assigns pi_1, pi_2, ... the way the card provider does. verify() answers
    pending until a result is scripted with succeed() or fail().
    """

    def __init__(
        self, gateway: Gateway = Gateway.MOBILE_MONEY, mints_reference: bool = True
    ) -> None:
        super().__init__(timeout=5)
        self.gateway = gateway
        self.mints_reference = mints_reference
        self.verify_results: dict[str, VerificationResult] = {}
        self.initiate_error: Optional[GatewayError] = None
        self.verify_error: Optional[GatewayError] = None
        self.refund_error: Optional[GatewayError] = None
        self.initiate_calls: list[dict[str, Any]] = []
        self.verify_calls: list[str] = []
        self.refund_calls: list[dict[str, Any]] = []
        self._refs = itertools.count(1)
        self._refunds = itertools.count(1)

    def new_reference(self) -> Optional[str]:
        if not self.mints_reference:
            return None
        return f"TX-{next(self._refs)}"

    def initiate(
        self,
        payment: PaymentRecord,
        payer: PayerInfo,
        provider_ref: Optional[str],
        idempotency_key: str,
    ) -> InitiationResult:
        self.initiate_calls.append(
            {
                "payment_id": payment.id,
                "provider_ref": provider_ref,
                "idempotency_key": idempotency_key,
            }
        )
        if self.initiate_error is not None:
            raise self.initiate_error
        if provider_ref:
            return InitiationResult(
                provider_ref=provider_ref, checkout_url=f"https://checkout.test/{provider_ref}"
            )
        ref = f"pi_{next(self._refs)}"
        return InitiationResult(provider_ref=ref, client_secret=f"{ref}_secret")

    def verify(self, provider_ref: str) -> VerificationResult:
        self.verify_calls.append(provider_ref)
        if self.verify_error is not None:
            raise self.verify_error
        return self.verify_results.get(
            provider_ref,
            VerificationResult(status=VerificationStatus.PENDING, provider_ref=provider_ref),
        )

    def refund(self, payment: PaymentRecord, amount: Decimal, idempotency_key: str) -> str:
        self.refund_calls.append(
            {"payment_id": payment.id, "amount": amount, "idempotency_key": idempotency_key}
        )
        if self.refund_error is not None:
            raise self.refund_error
        return f"re_{next(self._refunds)}"

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotification:
        payload = json.loads(raw_body or b"{}")
        return WebhookNotification(
            provider_ref=payload.get("tx_ref"),
            event_type=payload.get("status"),
            raw_payload=payload,
        )

    def succeed(
        self,
        provider_ref: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> None:
        self.verify_results[provider_ref] = VerificationResult(
            status=VerificationStatus.SUCCEEDED,
            provider_ref=provider_ref,
            raw_payload={"status": "success", "tx_ref": provider_ref},
            amount=amount,
            currency=currency,
        )

    def fail(self, provider_ref: str, reason: str = "declined") -> None:
        self.verify_results[provider_ref] = VerificationResult(
            status=VerificationStatus.FAILED,
            provider_ref=provider_ref,
            raw_payload={"status": "failed", "tx_ref": provider_ref},
            failure_reason=reason,
        )


@dataclass
class Services:
    engine: Engine
    notifier: RecordingNotifier
    audit: RecordingAudit
    gateway: FakeGateway
    registry: GatewayRegistry
    bookings: BookingService
    ledger: PaymentLedger
    coordinator: ReconciliationCoordinator


def build_services(engine: Engine, gateway: FakeGateway) -> Services:
    notifier = RecordingNotifier()
    audit = RecordingAudit()
    registry = GatewayRegistry({gateway.gateway: gateway}, default=gateway.gateway)
    return Services(
        engine=engine,
        notifier=notifier,
        audit=audit,
        gateway=gateway,
        registry=registry,
        bookings=BookingService(engine, notifier, audit, fee_rate=Decimal("0.05")),
        ledger=PaymentLedger(engine, registry, notifier, audit),
        coordinator=ReconciliationCoordinator(engine, registry, notifier, audit),
    )


def seed_property(
    engine: Engine,
    property_id: str = PROPERTY_ID,
    owner_id: str = OWNER.user_id,
    monthly_rate: str = "3000",
    **overrides: Any,
) -> None:
    """Insert (or update) a property in the read model."""
    row: dict[str, Any] = {
        "id": property_id,
        "owner_id": owner_id,
        "title": "Two bedroom flat",
        "monthly_rate": Decimal(monthly_rate),
        "currency": "ETB",
        "is_available": True,
        "min_lease_months": 0,
    }
    row.update(overrides)
    upsert_properties(engine, [row])


def create_booking(
    services: Services,
    tenant: Actor = TENANT,
    start: date = STAY_START,
    end: date = STAY_END,
) -> BookingRecord:
    return services.bookings.create(tenant, PROPERTY_ID, start, end, today=TODAY)


def approved_booking(services: Services, tenant: Actor = TENANT) -> BookingRecord:
    """Seed the property, request the June stay and have the owner approve it."""
    seed_property(services.engine)
    booking = create_booking(services, tenant=tenant)
    return services.bookings.transition(OWNER, booking.id, "approved", today=TODAY)


def paid_booking(services: Services) -> tuple[BookingRecord, PaymentRecord]:
    """Approved booking whose payment the provider confirmed."""
    booking = approved_booking(services)
    payment = services.ledger.initiate(TENANT, booking.id, payer=PayerInfo(email="t@example.com"))
    assert payment.provider_ref is not None
    services.gateway.succeed(payment.provider_ref, amount=payment.amount, currency="ETB")
    outcome = services.coordinator.reconcile_reference(
        services.gateway.gateway, payment.provider_ref
    )
    return booking, outcome.payment


def auth(actor: Actor) -> dict[str, str]:
    """Identity headers the upstream auth gateway would forward."""
    return {"X-User-Id": actor.user_id, "X-User-Role": actor.role}
