"""
Unit tests for the Stripe-backed card gateway adapter.
"""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe

from rental_core.db.records import PaymentRecord
from rental_core.errors import GatewayError, SignatureInvalid, ValidationError
from rental_core.gateways.base import PayerInfo, VerificationStatus
from rental_core.gateways.card import CardGateway, from_minor_units, to_minor_units


@pytest.fixture
def gateway() -> CardGateway:
    """Card adapter without a webhook secret; unsigned events tolerated."""
    return CardGateway(api_key="sk_test_123", webhook_secret=None, require_signature=False)


@pytest.fixture
def payment() -> PaymentRecord:
    return PaymentRecord(
        id="pay-1",
        booking_id="book-1",
        user_id="tenant-1",
        owner_id="owner-1",
        amount=Decimal("945"),
        currency="ETB",
        method="card",
        status="pending",
        version=1,
        provider_ref="pi_123",
    )


@pytest.mark.unit
def test_minor_unit_conversion() -> None:
    assert to_minor_units(Decimal("945")) == 94500
    assert to_minor_units(Decimal("10.005")) == 1001
    assert from_minor_units(94500) == Decimal("945")


@pytest.mark.unit
def test_initiate_creates_payment_intent(gateway: CardGateway, payment: PaymentRecord) -> None:
    intent = {"id": "pi_123", "client_secret": "pi_123_secret", "status": "requires_payment_method"}

    with patch("rental_core.gateways.card.stripe.PaymentIntent.create", return_value=intent) as m:
        result = gateway.initiate(
            payment,
            PayerInfo(email="t@example.com"),
            provider_ref=None,
            idempotency_key="payment-pay-1-attempt-1",
        )

    assert result.provider_ref == "pi_123"
    assert result.client_secret == "pi_123_secret"
    kwargs = m.call_args.kwargs
    assert kwargs["amount"] == 94500
    assert kwargs["currency"] == "etb"
    assert kwargs["idempotency_key"] == "payment-pay-1-attempt-1"
    assert kwargs["metadata"]["paymentId"] == "pay-1"
    assert kwargs["api_key"] == "sk_test_123"


@pytest.mark.unit
def test_initiate_maps_stripe_errors(gateway: CardGateway, payment: PaymentRecord) -> None:
    error = stripe.error.APIConnectionError("connection reset")

    with patch("rental_core.gateways.card.stripe.PaymentIntent.create", side_effect=error):
        with pytest.raises(GatewayError) as exc_info:
            gateway.initiate(payment, PayerInfo(), provider_ref=None, idempotency_key="k")

    assert exc_info.value.gateway == "card"
    assert "Temporary Stripe error" in exc_info.value.provider_message


@pytest.mark.unit
def test_verify_succeeded_intent(gateway: CardGateway) -> None:
    intent = {"id": "pi_123", "status": "succeeded", "amount_received": 94500, "currency": "etb"}

    with patch("rental_core.gateways.card.stripe.PaymentIntent.retrieve", return_value=intent):
        result = gateway.verify("pi_123")

    assert result.status == VerificationStatus.SUCCEEDED
    assert result.amount == Decimal("945")
    assert result.currency == "ETB"
    assert result.raw_payload["id"] == "pi_123"


@pytest.mark.unit
def test_verify_declined_intent(gateway: CardGateway) -> None:
    intent = {
        "id": "pi_123",
        "status": "requires_payment_method",
        "amount": 94500,
        "currency": "etb",
        "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
    }

    with patch("rental_core.gateways.card.stripe.PaymentIntent.retrieve", return_value=intent):
        result = gateway.verify("pi_123")

    assert result.status == VerificationStatus.FAILED
    assert result.failure_reason == "Your card was declined."


@pytest.mark.unit
@pytest.mark.parametrize("status", ["processing", "requires_action", "requires_payment_method"])
def test_verify_unsettled_intent_is_pending(gateway: CardGateway, status: str) -> None:
    intent = {"id": "pi_123", "status": status, "amount": 94500, "currency": "etb"}

    with patch("rental_core.gateways.card.stripe.PaymentIntent.retrieve", return_value=intent):
        result = gateway.verify("pi_123")

    assert result.status == VerificationStatus.PENDING


@pytest.mark.unit
def test_refund_uses_intent_and_idempotency_key(
    gateway: CardGateway, payment: PaymentRecord
) -> None:
    with patch(
        "rental_core.gateways.card.stripe.Refund.create", return_value={"id": "re_1"}
    ) as mock_refund:
        refund_id = gateway.refund(payment, Decimal("100"), idempotency_key="refund-key-1")

    assert refund_id == "re_1"
    kwargs = mock_refund.call_args.kwargs
    assert kwargs["payment_intent"] == "pi_123"
    assert kwargs["amount"] == 10000
    assert kwargs["idempotency_key"] == "refund-key-1"


@pytest.mark.unit
def test_parse_unsigned_succeeded_event(gateway: CardGateway) -> None:
    event = {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_123", "status": "succeeded"}},
    }

    notification = gateway.parse_webhook(json.dumps(event).encode("utf-8"), {})

    assert notification.provider_ref == "pi_123"
    assert notification.event_type == "payment_intent.succeeded"


@pytest.mark.unit
def test_parse_unhandled_event_has_no_reference(gateway: CardGateway) -> None:
    event = {"id": "evt_2", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}

    notification = gateway.parse_webhook(json.dumps(event).encode("utf-8"), {})

    assert notification.provider_ref is None


@pytest.mark.unit
def test_parse_invalid_json(gateway: CardGateway) -> None:
    with pytest.raises(ValidationError):
        gateway.parse_webhook(b"{not json", {})


@pytest.mark.unit
def test_signed_webhook_requires_header() -> None:
    gateway = CardGateway(api_key="sk", webhook_secret="whsec_1")

    with pytest.raises(SignatureInvalid):
        gateway.parse_webhook(b"{}", {})


@pytest.mark.unit
def test_signed_webhook_rejects_bad_signature() -> None:
    gateway = CardGateway(api_key="sk", webhook_secret="whsec_1")
    error = stripe.error.SignatureVerificationError("No signatures found", "t=1,v1=bad")

    with patch("rental_core.gateways.card.stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(SignatureInvalid):
            gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=bad"})


@pytest.mark.unit
def test_signed_webhook_uses_verified_event() -> None:
    gateway = CardGateway(api_key="sk", webhook_secret="whsec_1")
    event = {
        "id": "evt_3",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_9"}},
    }

    with patch(
        "rental_core.gateways.card.stripe.Webhook.construct_event", return_value=event
    ) as mock_construct:
        notification = gateway.parse_webhook(b"raw", {"stripe-signature": "t=1,v1=ok"})

    assert notification.provider_ref == "pi_9"
    assert mock_construct.call_args.kwargs["secret"] == "whsec_1"


@pytest.mark.unit
def test_unsigned_webhook_refused_when_required() -> None:
    gateway = CardGateway(api_key="sk", webhook_secret=None, require_signature=True)

    with pytest.raises(SignatureInvalid):
        gateway.parse_webhook(b"{}", {})
