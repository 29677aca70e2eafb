"""
Card gateway adapter backed by Stripe PaymentIntents.

The intent id is the provider reference. Stripe assigns it, so nothing can be
persisted before the create call; instead every create carries an idempotency
key derived from the payment id and attempt number, which makes a retried
initiation return the same intent.
"""

from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

import stripe
import structlog

from rental_core.config import (
    GATEWAY_TIMEOUT_SECONDS,
    REQUIRE_WEBHOOK_SIGNATURES,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from rental_core.db.records import PaymentRecord
from rental_core.errors import GatewayError, SignatureInvalid, ValidationError
from rental_core.gateways.base import (
    Gateway,
    GatewayAdapter,
    InitiationResult,
    PayerInfo,
    VerificationResult,
    VerificationStatus,
    WebhookNotification,
)

logger = structlog.get_logger(__name__)

HANDLED_EVENTS = ("payment_intent.succeeded", "payment_intent.payment_failed")
INTENT_FIELDS = ("id", "status", "amount", "amount_received", "currency", "metadata")
MINOR_UNITS = Decimal("100")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return Decimal(amount) / MINOR_UNITS


def _field(obj: Any, name: str, default: Any = None) -> Any:
    try:
        value = obj[name]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _intent_summary(intent: Any) -> dict[str, Any]:
    summary = {name: _field(intent, name) for name in INTENT_FIELDS}
    if summary.get("metadata") is not None:
        summary["metadata"] = dict(summary["metadata"])
    error = _field(intent, "last_payment_error")
    if error is not None:
        summary["last_payment_error"] = {
            "code": _field(error, "code"),
            "message": _field(error, "message"),
        }
    return summary


def _handle_stripe_error(exc: stripe.error.StripeError) -> GatewayError:
    """Map Stripe SDK errors onto GatewayError with a loggable provider message."""
    gateway = Gateway.CARD.value
    if isinstance(exc, stripe.error.CardError):
        return GatewayError(exc.user_message or "Card was declined", gateway=gateway)
    if isinstance(
        exc,
        (
            stripe.error.RateLimitError,
            stripe.error.APIConnectionError,
            stripe.error.APIError,
        ),
    ):
        return GatewayError(f"Temporary Stripe error: {exc}", gateway=gateway)
    if isinstance(exc, (stripe.error.AuthenticationError, stripe.error.PermissionError)):
        return GatewayError("Stripe credentials are invalid or unauthorized", gateway=gateway)
    if isinstance(exc, stripe.error.InvalidRequestError):
        return GatewayError(exc.user_message or str(exc), gateway=gateway)
    return GatewayError(exc.user_message or str(exc), gateway=gateway)


class CardGateway(GatewayAdapter):
    """
    Args:
        api_key: Stripe secret key, passed per request
        webhook_secret: Endpoint signing secret for Stripe-Signature
        require_signature: Reject webhooks when no signing secret is configured
        timeout: Upper bound per provider call in seconds
    """

    gateway = Gateway.CARD

    def __init__(
        self,
        api_key: Optional[str] = STRIPE_SECRET_KEY,
        webhook_secret: Optional[str] = STRIPE_WEBHOOK_SECRET,
        require_signature: bool = REQUIRE_WEBHOOK_SIGNATURES,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.require_signature = require_signature

    # ---------------------------------------------------------------- initiate

    def initiate(
        self,
        payment: PaymentRecord,
        payer: PayerInfo,
        provider_ref: Optional[str],
        idempotency_key: str,
    ) -> InitiationResult:
        return self._call("initiate", self._create_intent, payment, payer, idempotency_key)

    def _create_intent(
        self, payment: PaymentRecord, payer: PayerInfo, idempotency_key: str
    ) -> InitiationResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(payment.amount),
                currency=payment.currency.lower(),
                automatic_payment_methods={"enabled": True},
                receipt_email=payer.email,
                metadata={
                    "bookingId": payment.booking_id,
                    "paymentId": payment.id,
                    "userId": payment.user_id,
                },
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.error.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info("card_intent_created", payment_id=payment.id, intent_id=intent["id"])
        return InitiationResult(
            provider_ref=intent["id"],
            client_secret=_field(intent, "client_secret"),
            raw_payload=_intent_summary(intent),
        )

    # ------------------------------------------------------------------ verify

    def verify(self, provider_ref: str) -> VerificationResult:
        return self._call("verify", self._retrieve_intent, provider_ref)

    def _retrieve_intent(self, intent_id: str) -> VerificationResult:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.error.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        intent_status = _field(intent, "status", "")
        last_error = _field(intent, "last_payment_error")

        failure_reason = None
        if intent_status == "succeeded":
            status = VerificationStatus.SUCCEEDED
        elif intent_status == "canceled":
            status = VerificationStatus.FAILED
            failure_reason = _field(intent, "cancellation_reason", "canceled")
        elif intent_status == "requires_payment_method" and last_error is not None:
            status = VerificationStatus.FAILED
            failure_reason = _field(last_error, "message", "payment method declined")
        else:
            status = VerificationStatus.PENDING

        received = _field(intent, "amount_received") or _field(intent, "amount")
        currency = _field(intent, "currency")
        return VerificationResult(
            status=status,
            provider_ref=intent_id,
            raw_payload=_intent_summary(intent),
            amount=from_minor_units(received) if received is not None else None,
            currency=str(currency).upper() if currency else None,
            failure_reason=failure_reason,
        )

    # ------------------------------------------------------------------ refund

    def refund(self, payment: PaymentRecord, amount: Decimal, idempotency_key: str) -> str:
        return self._call("refund", self._create_refund, payment, amount, idempotency_key)

    def _create_refund(self, payment: PaymentRecord, amount: Decimal, idempotency_key: str) -> str:
        if not payment.provider_ref:
            raise GatewayError("Payment has no payment intent", gateway=self.gateway.value)
        try:
            refund = stripe.Refund.create(
                payment_intent=payment.provider_ref,
                amount=to_minor_units(amount),
                metadata={"paymentId": payment.id, "bookingId": payment.booking_id},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.error.StripeError as exc:
            raise _handle_stripe_error(exc) from exc
        return str(refund["id"])

    # ----------------------------------------------------------------- webhook

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotification:
        signature = headers.get("stripe-signature")

        if self.webhook_secret:
            if not signature:
                raise SignatureInvalid("Missing Stripe-Signature header")
            try:
                event = stripe.Webhook.construct_event(
                    payload=raw_body, sig_header=signature, secret=self.webhook_secret
                )
            except ValueError:
                raise ValidationError("Invalid payload")
            except stripe.error.SignatureVerificationError:
                raise SignatureInvalid()
        elif self.require_signature:
            logger.error("card_webhook_secret_missing")
            raise SignatureInvalid("Webhook secret is not configured")
        else:
            logger.warning(
                "card_webhook_unsigned",
                note="No webhook secret configured; skipping signature check",
            )
            try:
                event = json.loads(raw_body or b"{}")
            except ValueError:
                raise ValidationError("Invalid payload")
            if not isinstance(event, dict):
                raise ValidationError("Invalid payload")

        event_type = _field(event, "type")
        data_object = _field(_field(event, "data", {}), "object", {})
        provider_ref = _field(data_object, "id") if event_type in HANDLED_EVENTS else None

        return WebhookNotification(
            provider_ref=provider_ref,
            event_type=event_type,
            payment_method_hint=Gateway.CARD.value,
            raw_payload={"id": _field(event, "id"), "type": event_type},
        )
