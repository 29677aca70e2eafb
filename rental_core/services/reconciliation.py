"""
Reconciliation coordinator.

Turns gateway results into ledger transitions, exactly once. Webhooks, status
polling, the stale-payment job and admin actions all funnel through
``_reconcile``:

    1. Load the payment (by provider reference or id); a reference a retry
       replaced goes through ``_reconcile_retired`` instead
    2. Terminal already? Return it untouched, repairing a stale booking mirror
    3. Ask the provider via verify(); a webhook body is never trusted
    4. Apply succeeded/failed through ``apply_result`` in one transaction
    5. On a version conflict re-read and re-evaluate, so only one caller wins
    6. The winner emits payment.succeeded / payment.failed after commit
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from rental_core.config import RECONCILE_BATCH_SIZE, RECONCILE_STALE_MINUTES
from rental_core.db.readers.bookings import get_booking, list_mirror_mismatches
from rental_core.db.readers.payments import (
    get_payment,
    get_payment_by_reference,
    get_payment_by_retired_reference,
    list_stale_processing,
)
from rental_core.db.records import PaymentRecord
from rental_core.db.writers.bookings import set_booking_payment_status
from rental_core.db.writers.payments import retire_reference
from rental_core.errors import (
    ConcurrentModification,
    Forbidden,
    GatewayError,
    NotFound,
    RentalError,
    ValidationError,
)
from rental_core.gateways.base import Gateway, VerificationResult, VerificationStatus
from rental_core.gateways.registry import GatewayRegistry
from rental_core.metrics import reconciliations
from rental_core.models.status import (
    PAYMENT_TO_BOOKING_STATUS,
    PaymentMethod,
    PaymentStatus,
    Severity,
)
from rental_core.services.actors import SYSTEM, Actor
from rental_core.services.events import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    AuditSink,
    Notifier,
    safe_emit,
    safe_record,
)
from rental_core.services.ledger import apply_result
from rental_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

MAX_APPLY_ATTEMPTS = 3
AMOUNT_MISMATCH = "amount_mismatch"

PENDING = PaymentStatus.PENDING.value
PROCESSING = PaymentStatus.PROCESSING.value
SUCCEEDED = PaymentStatus.SUCCEEDED.value
FAILED = PaymentStatus.FAILED.value

Loader = Callable[[Connection], Optional[PaymentRecord]]


@dataclass(frozen=True)
class ReconciliationOutcome:
    """
    Result of one reconciliation attempt.

    ``changed`` is True only for the caller that applied the transition;
    ``event`` names the event it emitted, if any.
    """

    payment: PaymentRecord
    changed: bool = False
    event: Optional[str] = None


def judge(payment: PaymentRecord, result: VerificationResult) -> tuple[str, Optional[str]]:
    """
    Decide the terminal status a non-pending verification result leads to.

    A success is only accepted when the provider charged what the ledger
    expects; otherwise the payment fails with ``amount_mismatch``.

    Returns:
        (target status, failure reason)
    """
    if not result.verified:
        return FAILED, result.failure_reason or "payment failed at provider"
    if result.amount is not None and result.amount != payment.amount:
        return FAILED, AMOUNT_MISMATCH
    if result.currency is not None and result.currency.upper() != payment.currency.upper():
        return FAILED, AMOUNT_MISMATCH
    return SUCCEEDED, None


def payment_event_payload(payment: PaymentRecord, source: str) -> dict[str, Any]:
    return {
        "payment_id": payment.id,
        "booking_id": payment.booking_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "user_id": payment.user_id,
        "owner_id": payment.owner_id,
        "provider_ref": payment.provider_ref,
        "method": payment.method,
        "status": payment.status,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "invoice_number": payment.invoice_number,
        "failure_reason": payment.failure_reason,
        "source": source,
    }


class ReconciliationCoordinator:
    """
    Args:
        engine: SQLAlchemy engine
        gateways: Registry used to verify provider references
        notifier: Receives payment.succeeded / payment.failed after commit
        audit: Receives one record per applied result
    """

    def __init__(
        self,
        engine: Engine,
        gateways: GatewayRegistry,
        notifier: Notifier,
        audit: AuditSink,
    ) -> None:
        self.engine = engine
        self.gateways = gateways
        self.notifier = notifier
        self.audit = audit

    # -------------------------------------------------------------- entrypoints

    def reconcile_reference(
        self, gateway: Gateway | str, provider_ref: str, source: str = "webhook"
    ) -> ReconciliationOutcome:
        """
        Reconcile the payment a provider reference belongs to.

        A reference the payment has since replaced still resolves; see
        ``_reconcile_retired``.

        Raises:
            NotFound: no payment carries or carried this reference for this gateway
            GatewayError: verification failed; nothing was changed
        """
        method = Gateway(gateway).value

        with self.engine.connect() as conn:
            retired: Optional[PaymentRecord] = None
            if get_payment_by_reference(conn, method, provider_ref) is None:
                retired = get_payment_by_retired_reference(conn, method, provider_ref)
        if retired is not None:
            return self._reconcile_retired(retired, method, provider_ref, source)

        def load(conn: Connection) -> Optional[PaymentRecord]:
            return get_payment_by_reference(conn, method, provider_ref)

        return self._reconcile(load, source, f"{method}:{provider_ref}")

    def reconcile_payment(self, payment_id: str, source: str = "poll") -> ReconciliationOutcome:
        def load(conn: Connection) -> Optional[PaymentRecord]:
            return get_payment(conn, payment_id)

        return self._reconcile(load, source, payment_id)

    # ------------------------------------------------------------------- engine

    def _load(self, load: Loader, label: str) -> PaymentRecord:
        with self.engine.connect() as conn:
            payment = load(conn)
        if payment is None:
            raise NotFound(f"Payment {label} not found")
        return payment

    def _reconcile(self, load: Loader, source: str, label: str) -> ReconciliationOutcome:
        verification: Optional[VerificationResult] = None

        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            payment = self._load(load, label)

            if payment.is_terminal:
                self._repair_mirror(payment)
                reconciliations.labels(source=source, outcome="short_circuit").inc()
                logger.debug(
                    "reconcile_short_circuit", payment_id=payment.id, status=payment.status
                )
                return ReconciliationOutcome(payment)

            if payment.method == PaymentMethod.MANUAL.value or not payment.provider_ref:
                reconciliations.labels(source=source, outcome="pending").inc()
                return ReconciliationOutcome(payment)

            if verification is None or verification.provider_ref != payment.provider_ref:
                verification = self._verify(
                    payment.method, payment.provider_ref, payment.id, source
                )

            if verification.status == VerificationStatus.PENDING:
                reconciliations.labels(source=source, outcome="pending").inc()
                logger.info(
                    "reconcile_still_pending",
                    payment_id=payment.id,
                    provider_ref=payment.provider_ref,
                    source=source,
                )
                return ReconciliationOutcome(payment)

            target, failure_reason = judge(payment, verification)
            try:
                updated = self._apply(payment, target, failure_reason, verification.raw_payload)
            except ConcurrentModification:
                logger.info(
                    "reconcile_version_conflict",
                    payment_id=payment.id,
                    attempt=attempt,
                    source=source,
                )
                continue

            return self._announce(updated, source)

        raise ConcurrentModification(f"Payment {label} kept changing during reconciliation")

    def _verify(
        self, method: str, provider_ref: str, payment_id: str, source: str
    ) -> VerificationResult:
        adapter = self.gateways.get(method)
        try:
            return adapter.verify(provider_ref)
        except GatewayError as e:
            reconciliations.labels(source=source, outcome="gateway_error").inc()
            logger.warning(
                "reconcile_verification_failed",
                payment_id=payment_id,
                provider_ref=provider_ref,
                provider_message=e.provider_message,
                source=source,
            )
            raise

    def _apply(
        self,
        payment: PaymentRecord,
        target: str,
        failure_reason: Optional[str],
        raw_payload: Optional[dict[str, Any]],
    ) -> PaymentRecord:
        """Apply a terminal result; from pending a success passes through processing."""
        values: dict[str, Any] = {"provider_payload": raw_payload}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason

        with self.engine.begin() as conn:
            current = payment
            if target == SUCCEEDED and current.status == PENDING:
                current = apply_result(conn, current, PROCESSING)
            return apply_result(conn, current, target, values=values)

    def _announce(self, payment: PaymentRecord, source: str) -> ReconciliationOutcome:
        succeeded = payment.status == SUCCEEDED
        event = PAYMENT_SUCCEEDED if succeeded else PAYMENT_FAILED

        reconciliations.labels(source=source, outcome=payment.status).inc()
        log = logger.info if succeeded else logger.warning
        log(
            "payment_reconciled",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            status=payment.status,
            provider_ref=payment.provider_ref,
            failure_reason=payment.failure_reason,
            source=source,
        )
        safe_record(
            self.audit,
            "PAYMENT_PROCESSED" if succeeded else "PAYMENT_FAILED",
            payment.id,
            "Payment",
            SYSTEM.user_id,
            {
                "booking_id": payment.booking_id,
                "amount": str(payment.amount),
                "status": payment.status,
                "failure_reason": payment.failure_reason,
                "source": source,
            },
            Severity.MEDIUM.value if succeeded else Severity.HIGH.value,
        )
        safe_emit(self.notifier, event, payment_event_payload(payment, source))
        return ReconciliationOutcome(payment, changed=True, event=event)

    def _repair_mirror(self, payment: PaymentRecord) -> bool:
        """Re-derive the booking's payment status from its linked terminal payment."""
        expected = PAYMENT_TO_BOOKING_STATUS[payment.status]
        with self.engine.begin() as conn:
            booking = get_booking(conn, payment.booking_id)
            if booking is None or booking.payment_id != payment.id:
                return False
            if booking.payment_status == expected:
                return False
            set_booking_payment_status(conn, booking.id, expected)
        logger.warning(
            "booking_mirror_repaired",
            booking_id=booking.id,
            payment_id=payment.id,
            was=booking.payment_status,
            now=expected,
        )
        return True

    # ------------------------------------------------------- retired references

    def _reconcile_retired(
        self, payment: PaymentRecord, method: str, provider_ref: str, source: str
    ) -> ReconciliationOutcome:
        """
        Reconcile a reference the payment carried before a retry re-armed it.

        Anything short of a verified success on the old reference is only
        acknowledged. A success moves a still-open payment to succeeded and
        makes the old reference current again. On a payment that already
        settled, the extra charge is flagged for an admin and nothing changes.
        """
        verification = self._verify(method, provider_ref, payment.id, source)
        if verification.status != VerificationStatus.SUCCEEDED:
            reconciliations.labels(source=source, outcome="retired_ref").inc()
            logger.info(
                "retired_reference_acknowledged",
                payment_id=payment.id,
                provider_ref=provider_ref,
                provider_status=verification.status.value,
                source=source,
            )
            return ReconciliationOutcome(payment)

        payment_id = payment.id
        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            payment = self._load(lambda conn: get_payment(conn, payment_id), payment_id)

            if payment.status not in (PENDING, PROCESSING):
                self._flag_late_charge(payment, method, provider_ref, source)
                return ReconciliationOutcome(payment)

            target, failure_reason = judge(payment, verification)
            if target != SUCCEEDED:
                reconciliations.labels(source=source, outcome="retired_ref").inc()
                logger.warning(
                    "retired_reference_mismatch",
                    payment_id=payment.id,
                    provider_ref=provider_ref,
                    failure_reason=failure_reason,
                    source=source,
                )
                return ReconciliationOutcome(payment)

            try:
                updated = self._adopt_reference(
                    payment, method, provider_ref, verification.raw_payload
                )
            except ConcurrentModification:
                logger.info(
                    "reconcile_version_conflict",
                    payment_id=payment.id,
                    attempt=attempt,
                    source=source,
                )
                continue

            return self._announce(updated, source)

        raise ConcurrentModification(f"Payment {payment_id} kept changing during reconciliation")

    def _adopt_reference(
        self,
        payment: PaymentRecord,
        method: str,
        provider_ref: str,
        raw_payload: Optional[dict[str, Any]],
    ) -> PaymentRecord:
        """Settle an open payment on the retired reference the provider charged."""
        metadata = dict(payment.metadata or {})
        previous = list(metadata.get("previousRefs") or [])
        if payment.provider_ref:
            previous.append({"method": payment.method, "ref": payment.provider_ref})
        metadata["previousRefs"] = previous

        with self.engine.begin() as conn:
            if payment.provider_ref:
                retire_reference(conn, payment.id, payment.method, payment.provider_ref)
            current = payment
            if current.status == PENDING:
                current = apply_result(conn, current, PROCESSING)
            return apply_result(
                conn,
                current,
                SUCCEEDED,
                values={
                    "method": method,
                    "provider_ref": provider_ref,
                    "provider_payload": raw_payload,
                    "metadata": metadata,
                },
            )

    def _flag_late_charge(
        self, payment: PaymentRecord, method: str, provider_ref: str, source: str
    ) -> None:
        reconciliations.labels(source=source, outcome="late_charge").inc()
        logger.error(
            "retired_reference_charged",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            status=payment.status,
            provider_ref=provider_ref,
            current_ref=payment.provider_ref,
            source=source,
        )
        safe_record(
            self.audit,
            "PAYMENT_LATE_CHARGE",
            payment.id,
            "Payment",
            SYSTEM.user_id,
            {
                "booking_id": payment.booking_id,
                "method": method,
                "provider_ref": provider_ref,
                "status": payment.status,
                "source": source,
            },
            Severity.CRITICAL.value,
        )

    # ------------------------------------------------------------ admin and job

    def settle_manual(
        self, actor: Actor, payment_id: str, succeeded: bool, note: Optional[str] = None
    ) -> ReconciliationOutcome:
        """
        Record an admin-confirmed outcome for a manual payment.

        Raises:
            Forbidden: actor is not an admin
            ValidationError: payment was made through a gateway
            InvalidPaymentTransition: payment is not open
        """
        if not actor.is_admin:
            raise Forbidden("Only admins can settle manual payments")

        payment = self._load(lambda conn: get_payment(conn, payment_id), payment_id)
        if payment.method != PaymentMethod.MANUAL.value:
            raise ValidationError("Only manual payments can be settled by an admin")

        target = SUCCEEDED if succeeded else FAILED
        updated = self._apply(
            payment,
            target,
            None if succeeded else (note or "rejected by admin"),
            {"settledBy": actor.user_id, "note": note},
        )
        return self._announce(updated, source="admin")

    def repair_booking_mirrors(self, limit: int = RECONCILE_BATCH_SIZE) -> int:
        """
        Fix bookings whose payment_status disagrees with their linked payment.

        Returns:
            int: number of bookings repaired
        """
        with self.engine.begin() as conn:
            mismatches = list_mirror_mismatches(conn, limit=limit)
            for booking_id, was, payment_status in mismatches:
                expected = PAYMENT_TO_BOOKING_STATUS[payment_status]
                set_booking_payment_status(conn, booking_id, expected)
                logger.warning(
                    "booking_mirror_repaired", booking_id=booking_id, was=was, now=expected
                )
        return len(mismatches)

    def reconcile_stale(
        self,
        older_than_minutes: int = RECONCILE_STALE_MINUTES,
        limit: int = RECONCILE_BATCH_SIZE,
    ) -> dict[str, int]:
        """
        Poll the provider for processing payments nobody has heard about lately.

        Per-payment errors are logged and the batch continues.

        Returns:
            dict: counts of checked, succeeded, failed, pending and errors
        """
        cutoff = utc_now() - timedelta(minutes=older_than_minutes)
        with self.engine.connect() as conn:
            stale = list_stale_processing(conn, cutoff, limit=limit)

        summary = {"checked": 0, "succeeded": 0, "failed": 0, "pending": 0, "errors": 0}
        for payment in stale:
            summary["checked"] += 1
            try:
                outcome = self.reconcile_payment(payment.id, source="job")
            except RentalError as e:
                summary["errors"] += 1
                logger.warning(
                    "stale_payment_reconcile_failed",
                    payment_id=payment.id,
                    error_code=e.code,
                    error=str(e),
                )
                continue

            if outcome.changed and outcome.payment.status == SUCCEEDED:
                summary["succeeded"] += 1
            elif outcome.changed:
                summary["failed"] += 1
            else:
                summary["pending"] += 1

        logger.info("stale_payments_reconciled", cutoff=cutoff.isoformat(), **summary)
        return summary
