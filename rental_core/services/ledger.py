"""
Payment ledger.

Owns the payment lifecycle independently of which gateway produced it:

    pending -> processing -> succeeded -> refunded / partially_refunded
          \\-> failed (-> pending on manual retry)
          \\-> cancelled

``apply_result`` is the only function that changes a payment's status. It
validates the transition, performs a compare-and-set on the payment version,
and writes the booking's payment-status mirror in the same transaction, so a
reader never sees the booking ahead of its payment.

Gateway calls are made outside database transactions. The provider reference
is persisted before the call whenever the adapter can mint it.
"""

from __future__ import annotations

import secrets
import string
import uuid
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from rental_core.db.readers.bookings import get_booking
from rental_core.db.readers.payments import (
    get_open_payment_for_booking,
    get_payment,
    get_refund_by_key,
    list_payments_for_actor,
    sum_reserved_refunds,
)
from rental_core.db.records import BookingRecord, PaymentRecord, to_decimal
from rental_core.db.writers.bookings import set_booking_payment_status
from rental_core.db.writers.payments import (
    insert_payment,
    insert_refund,
    retire_reference,
    update_payment_versioned,
    update_refund,
)
from rental_core.errors import (
    AlreadyPaid,
    ConcurrentModification,
    Forbidden,
    GatewayError,
    InvalidAmount,
    InvalidPaymentTransition,
    NotApproved,
    NotFound,
    NotSucceeded,
    PaymentInProgress,
    RefundExceedsAmount,
    StateConflict,
    UnsupportedGateway,
)
from rental_core.gateways.base import GatewayAdapter, InitiationResult, PayerInfo
from rental_core.gateways.registry import GatewayRegistry
from rental_core.metrics import payment_transitions, payment_version_conflicts
from rental_core.models.status import (
    PAYMENT_TO_BOOKING_STATUS,
    BookingPaymentStatus,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Severity,
)
from rental_core.services.actors import Actor
from rental_core.services.events import (
    PAYMENT_REFUNDED,
    AuditSink,
    Notifier,
    safe_emit,
    safe_record,
)
from rental_core.services.locks import KeyedLocks, payment_locks
from rental_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

PENDING = PaymentStatus.PENDING.value
PROCESSING = PaymentStatus.PROCESSING.value
SUCCEEDED = PaymentStatus.SUCCEEDED.value
FAILED = PaymentStatus.FAILED.value
REFUNDED = PaymentStatus.REFUNDED.value
PARTIALLY_REFUNDED = PaymentStatus.PARTIALLY_REFUNDED.value
CANCELLED = PaymentStatus.CANCELLED.value

PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING, FAILED, CANCELLED}),
    PROCESSING: frozenset({SUCCEEDED, FAILED}),
    SUCCEEDED: frozenset({REFUNDED, PARTIALLY_REFUNDED}),
    PARTIALLY_REFUNDED: frozenset({REFUNDED, PARTIALLY_REFUNDED}),
    FAILED: frozenset({PENDING}),
}

REFUNDABLE_STATUSES = (SUCCEEDED, PARTIALLY_REFUNDED, REFUNDED)
RECEIPT_STATUSES = (SUCCEEDED, PARTIALLY_REFUNDED, REFUNDED)
MAX_REFUND_ATTEMPTS = 3
_INVOICE_ALPHABET = string.digits + string.ascii_uppercase


def check_payment_transition(from_status: str, to_status: str) -> None:
    if to_status not in PAYMENT_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidPaymentTransition(from_status, to_status)


def generate_invoice_number() -> str:
    """INV-YYYYMMDD-XXXXX, dated in UTC."""
    suffix = "".join(secrets.choice(_INVOICE_ALPHABET) for _ in range(5))
    return f"INV-{utc_now():%Y%m%d}-{suffix}"


def apply_result(
    conn: Connection,
    payment: PaymentRecord,
    new_status: str,
    values: Optional[dict[str, Any]] = None,
) -> PaymentRecord:
    """
    Move ``payment`` to ``new_status`` and update the booking mirror.

    Must be called inside the caller's transaction. ``payment`` is the
    snapshot the caller based its decision on; if the stored version moved
    since, nothing is written.

    Args:
        conn: Connection inside an open transaction
        payment: Snapshot read by the caller
        new_status: Target payment status
        values: Extra columns to write with the status change

    Returns:
        PaymentRecord: the payment as stored after the update

    Raises:
        InvalidPaymentTransition: transition not in PAYMENT_TRANSITIONS
        ConcurrentModification: payment changed since ``payment`` was read
    """
    check_payment_transition(payment.status, new_status)

    updates: dict[str, Any] = dict(values or {})
    updates["status"] = new_status
    if new_status == SUCCEEDED and payment.paid_at is None:
        updates["paid_at"] = utc_now()
        if not payment.invoice_number:
            updates["invoice_number"] = generate_invoice_number()

    if not update_payment_versioned(conn, payment.id, payment.version, updates):
        payment_version_conflicts.inc()
        raise ConcurrentModification(f"Payment {payment.id} was modified concurrently")

    set_booking_payment_status(
        conn,
        payment.booking_id,
        PAYMENT_TO_BOOKING_STATUS[new_status],
        payment_id=payment.id,
    )

    payment_transitions.labels(
        method=payment.method, from_status=payment.status, to_status=new_status
    ).inc()

    updated = get_payment(conn, payment.id)
    assert updated is not None
    return updated


def _breakdown(booking: BookingRecord) -> dict[str, str]:
    return {
        "rent": str(booking.rent_amount),
        "serviceFee": str(booking.service_fee),
        "taxes": "0",
        "deposit": "0",
        "discount": "0",
    }


def _payer_metadata(booking: BookingRecord, payer: PayerInfo, attempt: int) -> dict[str, Any]:
    name = " ".join(part for part in (payer.first_name, payer.last_name) if part) or None
    return {
        "attempt": attempt,
        "description": f"Rental payment for booking {booking.id}",
        "customerEmail": payer.email,
        "customerPhone": payer.phone_number,
        "customerName": name,
        "previousRefs": [],
    }


class PaymentLedger:
    """
    Args:
        engine: SQLAlchemy engine
        gateways: Registry used to resolve and call adapters
        notifier: Receives payment.refunded after commit
        audit: Receives one record per payment state change
        locks: Registry serializing in-process work per booking/payment
    """

    def __init__(
        self,
        engine: Engine,
        gateways: GatewayRegistry,
        notifier: Notifier,
        audit: AuditSink,
        locks: KeyedLocks = payment_locks,
    ) -> None:
        self.engine = engine
        self.gateways = gateways
        self.notifier = notifier
        self.audit = audit
        self.locks = locks

    # ----------------------------------------------------------------- initiate

    def initiate(
        self,
        actor: Actor,
        booking_id: str,
        preference: Optional[str] = None,
        payer: Optional[PayerInfo] = None,
    ) -> PaymentRecord:
        """
        Open a payment for an approved, unpaid booking and hand it to a gateway.

        ``preference`` is a hint ("mobile_money", "card"); the gateway is
        resolved from configuration. "manual" is reserved for admins and skips
        the gateway entirely.

        Returns:
            PaymentRecord in ``processing`` with gateway_data holding the
            checkout URL or client secret

        Raises:
            NotFound, Forbidden, AlreadyPaid, NotApproved, InvalidAmount,
            PaymentInProgress, UnsupportedGateway, GatewayError
        """
        payer = payer or PayerInfo()

        adapter: Optional[GatewayAdapter] = None
        if preference and preference.lower() == PaymentMethod.MANUAL.value:
            if not actor.is_admin:
                raise Forbidden("Only admins can record manual payments")
            method = PaymentMethod.MANUAL.value
        else:
            gateway = self.gateways.resolve(preference)
            adapter = self.gateways.get(gateway)
            method = gateway.value

        with self.locks.hold(f"booking:{booking_id}"):
            payment = self._open_payment(actor, booking_id, method, adapter, payer)

        if adapter is None:
            with self.engine.begin() as conn:
                payment = apply_result(conn, payment, PROCESSING)
            self._audit_initiated(actor, payment)
            return payment

        attempt = int((payment.metadata or {}).get("attempt", 1))
        try:
            result = adapter.initiate(
                payment,
                payer,
                provider_ref=payment.provider_ref,
                idempotency_key=f"payment-{payment.id}-attempt-{attempt}",
            )
        except GatewayError as e:
            logger.warning(
                "payment_initiation_failed",
                payment_id=payment.id,
                booking_id=booking_id,
                gateway=method,
                provider_message=e.provider_message,
            )
            raise

        payment = self._mark_processing(payment, result)
        self._audit_initiated(actor, payment)
        return payment

    def _open_payment(
        self,
        actor: Actor,
        booking_id: str,
        method: str,
        adapter: Optional[GatewayAdapter],
        payer: PayerInfo,
    ) -> PaymentRecord:
        """Create (or reuse) the pending payment row; provider ref persisted here."""
        provider_ref = adapter.new_reference() if adapter is not None else None
        try:
            with self.engine.begin() as conn:
                booking = get_booking(conn, booking_id, for_update=True)
                if booking is None:
                    raise NotFound(f"Booking {booking_id} not found")
                if actor.user_id != booking.tenant_id and not actor.is_admin:
                    raise Forbidden("Only the tenant can pay for this booking")
                if booking.payment_status == BookingPaymentStatus.PAID.value:
                    raise AlreadyPaid()
                if booking.status != BookingStatus.APPROVED.value:
                    raise NotApproved()
                if booking.total_amount <= 0:
                    raise InvalidAmount()

                existing = get_open_payment_for_booking(conn, booking_id)
                if existing is not None and existing.status == PROCESSING:
                    raise PaymentInProgress()

                if existing is not None:
                    payment_id = self._reuse_pending(conn, existing, method, provider_ref, payer)
                else:
                    payment_id = str(uuid.uuid4())
                    insert_payment(
                        conn,
                        {
                            "id": payment_id,
                            "booking_id": booking.id,
                            "user_id": booking.tenant_id,
                            "owner_id": booking.owner_id,
                            "amount": booking.total_amount,
                            "currency": booking.currency,
                            "method": method,
                            "status": PENDING,
                            "provider_ref": provider_ref,
                            "breakdown": _breakdown(booking),
                            "metadata": _payer_metadata(booking, payer, attempt=1),
                        },
                    )

                set_booking_payment_status(
                    conn, booking.id, BookingPaymentStatus.UNPAID.value, payment_id=payment_id
                )
                payment = get_payment(conn, payment_id)
        except IntegrityError:
            # Lost the race for the booking's single open payment slot
            raise PaymentInProgress()

        assert payment is not None
        logger.info(
            "payment_opened",
            payment_id=payment.id,
            booking_id=booking_id,
            method=method,
            provider_ref=payment.provider_ref,
        )
        return payment

    def _reuse_pending(
        self,
        conn: Connection,
        existing: PaymentRecord,
        method: str,
        provider_ref: Optional[str],
        payer: PayerInfo,
    ) -> str:
        """
        Re-arm a pending payment whose previous initiation was not accepted.

        The payer never received a checkout for the old reference, so a fresh
        one is minted and the old one retired so late callbacks still resolve.
        """
        metadata = dict(existing.metadata or {})
        previous = list(metadata.get("previousRefs") or [])
        if existing.provider_ref:
            previous.append({"method": existing.method, "ref": existing.provider_ref})
            retire_reference(conn, existing.id, existing.method, existing.provider_ref)
        metadata.update(
            attempt=int(metadata.get("attempt", 1)) + 1,
            previousRefs=previous,
            customerEmail=payer.email or metadata.get("customerEmail"),
            customerPhone=payer.phone_number or metadata.get("customerPhone"),
        )
        ok = update_payment_versioned(
            conn,
            existing.id,
            existing.version,
            {
                "method": method,
                "provider_ref": provider_ref,
                "gateway_data": None,
                "metadata": metadata,
            },
        )
        if not ok:
            payment_version_conflicts.inc()
            raise PaymentInProgress()
        return existing.id

    def _mark_processing(self, opened: PaymentRecord, result: InitiationResult) -> PaymentRecord:
        gateway_data = {
            "checkoutUrl": result.checkout_url,
            "clientSecret": result.client_secret,
            "providerRef": result.provider_ref,
        }
        with self.engine.begin() as conn:
            current = get_payment(conn, opened.id)
            assert current is not None
            if current.version != opened.version:
                # A webhook or a concurrent initiation got here first
                if current.provider_ref == result.provider_ref and current.status != PENDING:
                    return current
                raise PaymentInProgress()
            try:
                return apply_result(
                    conn,
                    current,
                    PROCESSING,
                    values={"provider_ref": result.provider_ref, "gateway_data": gateway_data},
                )
            except ConcurrentModification:
                raise PaymentInProgress()

    def _audit_initiated(self, actor: Actor, payment: PaymentRecord) -> None:
        logger.info(
            "payment_initiated",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            method=payment.method,
            provider_ref=payment.provider_ref,
            amount=str(payment.amount),
        )
        safe_record(
            self.audit,
            "PAYMENT_INITIATED",
            payment.id,
            "Payment",
            actor.user_id,
            {
                "booking_id": payment.booking_id,
                "method": payment.method,
                "amount": str(payment.amount),
                "currency": payment.currency,
            },
            Severity.MEDIUM.value,
        )

    # ------------------------------------------------------------------- refund

    def refund(
        self,
        actor: Actor,
        payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Refund part or all of a settled payment.

        The refund is reserved in ``payment_refunds`` before the gateway is
        called, so concurrent refunds cannot jointly exceed the amount. When
        no idempotency key is given one is derived from the payment's refund
        state, which makes an identical retry hit the same provider refund.

        Args:
            actor: Admin performing the refund
            payment_id: Payment to refund
            amount: Amount to refund; defaults to the remaining balance
            reason: Free-text reason stored on the refund
            idempotency_key: Client key; a repeat returns the recorded outcome

        Returns:
            PaymentRecord: refunded or partially_refunded payment

        Raises:
            Forbidden, NotFound, NotSucceeded, RefundExceedsAmount,
            InvalidAmount, StateConflict, GatewayError
        """
        if not actor.is_admin:
            raise Forbidden("Only admins can refund payments")
        if amount is not None and Decimal(str(amount)) <= 0:
            raise InvalidAmount("Refund amount must be greater than zero")

        with self.locks.hold(f"payment:{payment_id}"):
            payment, reservation, replay = self._reserve_refund(
                actor, payment_id, amount, reason, idempotency_key
            )
            if replay:
                return payment

            refund_amount = to_decimal(reservation["amount"])
            try:
                refund_id = self._gateway_refund(payment, refund_amount, reservation)
            except GatewayError:
                with self.engine.begin() as conn:
                    update_refund(conn, reservation["id"], {"status": "failed"})
                raise

            updated = self._complete_refund(payment_id, reservation, refund_id, reason)

        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            amount=str(refund_amount),
            refund_id=refund_id,
            status=updated.status,
        )
        safe_record(
            self.audit,
            "PAYMENT_REFUNDED",
            payment_id,
            "Payment",
            actor.user_id,
            {
                "amount": str(refund_amount),
                "reason": reason,
                "refund_id": refund_id,
                "status": updated.status,
            },
            Severity.HIGH.value,
        )
        safe_emit(
            self.notifier,
            PAYMENT_REFUNDED,
            {
                "payment_id": updated.id,
                "booking_id": updated.booking_id,
                "user_id": updated.user_id,
                "owner_id": updated.owner_id,
                "amount": str(refund_amount),
                "refunded_total": str(updated.refunded_total),
                "payment_amount": str(updated.amount),
                "currency": updated.currency,
                "status": updated.status,
                "actor_id": actor.user_id,
            },
        )
        return updated

    def _reserve_refund(
        self,
        actor: Actor,
        payment_id: str,
        amount: Optional[Decimal],
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> tuple[PaymentRecord, dict[str, Any], bool]:
        with self.engine.begin() as conn:
            payment = get_payment(conn, payment_id)
            if payment is None:
                raise NotFound(f"Payment {payment_id} not found")

            if idempotency_key:
                previous = get_refund_by_key(conn, idempotency_key)
                if previous is not None:
                    return self._replay_refund(conn, payment, previous)

            if payment.status not in REFUNDABLE_STATUSES:
                raise NotSucceeded()

            in_flight = to_decimal(sum_reserved_refunds(conn, payment.id))
            remaining = payment.amount - payment.refunded_total - in_flight
            requested = Decimal(str(amount)) if amount is not None else remaining
            if requested <= 0 or requested > remaining:
                raise RefundExceedsAmount(
                    f"Refund of {requested} exceeds refundable balance {remaining}"
                )

            key = idempotency_key or f"{payment.id}:{requested}:{payment.refunded_total}"
            previous = get_refund_by_key(conn, key)
            if previous is not None:
                return self._replay_refund(conn, payment, previous)

            reservation = {
                "id": str(uuid.uuid4()),
                "payment_id": payment.id,
                "amount": requested,
                "reason": reason,
                "status": "pending",
                "idempotency_key": key,
                "performed_by": actor.user_id,
            }
            insert_refund(conn, reservation)
        return payment, reservation, False

    def _replay_refund(
        self, conn: Connection, payment: PaymentRecord, previous: dict[str, Any]
    ) -> tuple[PaymentRecord, dict[str, Any], bool]:
        if previous["status"] == "completed":
            return payment, previous, True
        if previous["status"] == "pending":
            raise StateConflict("A refund with this key is already in progress")
        # Failed attempt: retry with the same provider idempotency key
        if payment.status not in REFUNDABLE_STATUSES:
            raise NotSucceeded()
        if payment.refunded_total + to_decimal(previous["amount"]) > payment.amount:
            raise RefundExceedsAmount()
        update_refund(conn, previous["id"], {"status": "pending"})
        return payment, dict(previous, status="pending"), False

    def _gateway_refund(
        self, payment: PaymentRecord, amount: Decimal, reservation: dict[str, Any]
    ) -> str:
        key = f"refund-{reservation['idempotency_key']}"
        if payment.method == PaymentMethod.MANUAL.value:
            return f"MANUAL-REFUND-{reservation['id'][:8].upper()}"
        try:
            adapter = self.gateways.get(payment.method)
        except UnsupportedGateway:
            raise GatewayError(f"Gateway {payment.method} is not configured", payment.method)
        return adapter.refund(payment, amount, idempotency_key=key)

    def _complete_refund(
        self,
        payment_id: str,
        reservation: dict[str, Any],
        refund_id: str,
        reason: Optional[str],
    ) -> PaymentRecord:
        amount = to_decimal(reservation["amount"])
        for _ in range(MAX_REFUND_ATTEMPTS):
            try:
                with self.engine.begin() as conn:
                    payment = get_payment(conn, payment_id)
                    assert payment is not None
                    cumulative = payment.refunded_total + amount
                    target = REFUNDED if cumulative >= payment.amount else PARTIALLY_REFUNDED
                    updated = apply_result(
                        conn,
                        payment,
                        target,
                        values={
                            "refund": {
                                "amount": str(cumulative),
                                "reason": reason or (payment.refund or {}).get("reason"),
                                "refundedAt": utc_now().isoformat(),
                                "refundId": refund_id,
                            }
                        },
                    )
                    update_refund(
                        conn, reservation["id"], {"status": "completed", "refund_id": refund_id}
                    )
                    return updated
            except ConcurrentModification:
                logger.info("refund_completion_retry", payment_id=payment_id)
        raise ConcurrentModification(f"Payment {payment_id} kept changing during refund")

    # ------------------------------------------------------------ admin actions

    def reset_for_retry(self, actor: Actor, payment_id: str) -> PaymentRecord:
        """
        Manually move a failed payment back to pending with a fresh provider reference.

        Raises:
            Forbidden, NotFound, InvalidPaymentTransition, AlreadyPaid, PaymentInProgress
        """
        if not actor.is_admin:
            raise Forbidden("Only admins can reset payments")

        with self.engine.connect() as conn:
            method = self._require_payment(conn, payment_id).method
        provider_ref: Optional[str] = None
        if method != PaymentMethod.MANUAL.value:
            provider_ref = self.gateways.get(method).new_reference()

        try:
            with self.engine.begin() as conn:
                payment = self._require_payment(conn, payment_id)
                check_payment_transition(payment.status, PENDING)
                booking = get_booking(conn, payment.booking_id)
                paid = BookingPaymentStatus.PAID.value
                if booking is not None and booking.payment_status == paid:
                    raise AlreadyPaid()
                if get_open_payment_for_booking(conn, payment.booking_id) is not None:
                    raise PaymentInProgress()

                metadata = dict(payment.metadata or {})
                previous = list(metadata.get("previousRefs") or [])
                if payment.provider_ref:
                    previous.append({"method": payment.method, "ref": payment.provider_ref})
                    retire_reference(conn, payment.id, payment.method, payment.provider_ref)
                metadata.update(
                    attempt=int(metadata.get("attempt", 1)) + 1, previousRefs=previous
                )
                updated = apply_result(
                    conn,
                    payment,
                    PENDING,
                    values={
                        "provider_ref": provider_ref,
                        "failure_reason": None,
                        "gateway_data": None,
                        "metadata": metadata,
                    },
                )
        except IntegrityError:
            raise PaymentInProgress()

        logger.info("payment_reset_for_retry", payment_id=payment_id, actor_id=actor.user_id)
        safe_record(
            self.audit,
            "PAYMENT_RETRY_RESET",
            payment_id,
            "Payment",
            actor.user_id,
            {"previous_ref": payment.provider_ref, "provider_ref": updated.provider_ref},
            Severity.MEDIUM.value,
        )
        return updated

    def cancel_pending(self, actor: Actor, payment_id: str) -> PaymentRecord:
        """Abandon a payment that never reached the gateway (payer or admin)."""
        with self.engine.begin() as conn:
            payment = self._require_payment(conn, payment_id)
            if actor.user_id != payment.user_id and not actor.is_admin:
                raise Forbidden("Only the payer or an admin can cancel this payment")
            updated = apply_result(conn, payment, CANCELLED)

        logger.info("payment_cancelled", payment_id=payment_id, actor_id=actor.user_id)
        safe_record(
            self.audit,
            "PAYMENT_CANCELLED",
            payment_id,
            "Payment",
            actor.user_id,
            {"previous_status": payment.status},
            Severity.MEDIUM.value,
        )
        return updated

    # ------------------------------------------------------------------ queries

    @staticmethod
    def _require_payment(conn: Connection, payment_id: str) -> PaymentRecord:
        payment = get_payment(conn, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        return payment

    def get(self, actor: Actor, payment_id: str) -> PaymentRecord:
        with self.engine.connect() as conn:
            payment = self._require_payment(conn, payment_id)
        if actor.user_id not in (payment.user_id, payment.owner_id) and not actor.is_privileged:
            raise Forbidden("You cannot view this payment")
        return payment

    def history(
        self,
        actor: Actor,
        status: Optional[str] = None,
        method: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PaymentRecord], int]:
        with self.engine.connect() as conn:
            return list_payments_for_actor(
                conn,
                actor.user_id,
                actor.role,
                status=status,
                method=method,
                page=page,
                limit=limit,
            )

    def receipt(self, actor: Actor, payment_id: str) -> dict[str, Any]:
        payment = self.get(actor, payment_id)
        if payment.status not in RECEIPT_STATUSES:
            raise NotSucceeded("Receipt is only available for successful payments")
        return {
            "invoice_number": payment.invoice_number,
            "payment_id": payment.id,
            "booking_id": payment.booking_id,
            "payer_id": payment.user_id,
            "payee_id": payment.owner_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "method": payment.method,
            "provider_ref": payment.provider_ref,
            "breakdown": payment.breakdown,
            "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
            "refund": payment.refund,
            "status": payment.status,
        }
