"""
Mobile-money gateway adapter (Chapa-compatible hosted checkout API).

Flow:
    1. new_reference() mints the tx_ref, which is persisted before any call
    2. initiate() POSTs /v1/transaction/initialize and returns the checkout URL
    3. The provider calls our webhook with the tx_ref (HMAC-SHA256 signed)
    4. verify() GETs /v1/transaction/verify/{tx_ref}; only data.status ==
       "success" counts as paid

Refunds are settled manually by finance; refund() only mints the reference.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import string
import time
from decimal import Decimal
from typing import Any, Mapping, Optional

import structlog

from rental_core.config import (
    CHAPA_BASE_URL,
    CHAPA_SECRET_KEY,
    CHAPA_WEBHOOK_SECRET,
    CLIENT_URL,
    GATEWAY_TIMEOUT_SECONDS,
    REQUIRE_WEBHOOK_SIGNATURES,
    SERVER_URL,
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
from rental_core.gateways.http import request_json

logger = structlog.get_logger(__name__)

SIGNATURE_HEADERS = ("chapa-signature", "x-chapa-signature")
FAILED_STATUSES = {"failed", "failure", "cancelled", "canceled", "reversed"}
_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_tx_ref() -> str:
    """
    Mint a merchant transaction reference: "TX-" + base36 millis + random suffix.

    Example:
        >>> generate_tx_ref()
        'TX-LXQ3K2B1-9F4K2A'
    """
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"TX-{_base36(int(time.time() * 1000))}-{suffix}"


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class MobileMoneyGateway(GatewayAdapter):
    """
    Args:
        secret_key: API secret used as Bearer token
        webhook_secret: Shared secret for webhook HMAC signatures
        base_url: API root, e.g. https://api.chapa.co
        require_signature: Reject webhooks when no secret is configured
        timeout: Upper bound per provider call in seconds
    """

    gateway = Gateway.MOBILE_MONEY

    def __init__(
        self,
        secret_key: Optional[str] = CHAPA_SECRET_KEY,
        webhook_secret: Optional[str] = CHAPA_WEBHOOK_SECRET,
        base_url: str = CHAPA_BASE_URL,
        require_signature: bool = REQUIRE_WEBHOOK_SIGNATURES,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(timeout=timeout)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.require_signature = require_signature

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def new_reference(self) -> str:
        return generate_tx_ref()

    # ---------------------------------------------------------------- initiate

    def initiate(
        self,
        payment: PaymentRecord,
        payer: PayerInfo,
        provider_ref: Optional[str],
        idempotency_key: str,
    ) -> InitiationResult:
        if not provider_ref:
            raise GatewayError("tx_ref is required", gateway=self.gateway.value)
        return self._call("initiate", self._initialize, payment, payer, provider_ref)

    def _initialize(
        self, payment: PaymentRecord, payer: PayerInfo, tx_ref: str
    ) -> InitiationResult:
        metadata = payment.metadata or {}
        body = {
            "amount": str(payment.amount),
            "currency": payment.currency,
            "email": payer.email,
            "first_name": payer.first_name,
            "last_name": payer.last_name,
            "phone_number": payer.phone_number,
            "tx_ref": tx_ref,
            "callback_url": metadata.get(
                "callbackUrl", f"{SERVER_URL}/api/v1/payments/webhooks/mobile-money"
            ),
            "return_url": metadata.get(
                "returnUrl", f"{CLIENT_URL}/payments/{payment.id}/complete"
            ),
            "customization": {
                "title": "Rental Payment",
                "description": metadata.get("description", f"Booking {payment.booking_id}"),
            },
            "meta": {"bookingId": payment.booking_id, "paymentId": payment.id},
        }

        data, status_code = request_json(
            "POST",
            f"{self.base_url}/v1/transaction/initialize",
            headers=self._headers(),
            json_body=body,
            timeout=self.timeout,
            gateway=self.gateway.value,
        )

        checkout_url = (data.get("data") or {}).get("checkout_url")
        if status_code >= 400 or data.get("status") != "success" or not checkout_url:
            raise GatewayError(_provider_message(data, status_code), gateway=self.gateway.value)

        logger.info("mobile_money_initialized", payment_id=payment.id, tx_ref=tx_ref)
        return InitiationResult(provider_ref=tx_ref, checkout_url=checkout_url, raw_payload=data)

    # ------------------------------------------------------------------ verify

    def verify(self, provider_ref: str) -> VerificationResult:
        return self._call("verify", self._verify, provider_ref)

    def _verify(self, tx_ref: str) -> VerificationResult:
        data, status_code = request_json(
            "GET",
            f"{self.base_url}/v1/transaction/verify/{tx_ref}",
            headers=self._headers(),
            timeout=self.timeout,
            gateway=self.gateway.value,
        )
        if status_code >= 400 or data.get("status") != "success":
            # Envelope failure means we could not read the transaction, not that it failed
            raise GatewayError(_provider_message(data, status_code), gateway=self.gateway.value)

        tx = data.get("data") or {}
        tx_status = str(tx.get("status", "")).lower()
        amount = tx.get("amount")
        currency = tx.get("currency")

        if tx_status == "success":
            status = VerificationStatus.SUCCEEDED
        elif tx_status in FAILED_STATUSES:
            status = VerificationStatus.FAILED
        else:
            status = VerificationStatus.PENDING

        failure_reason = None
        if status == VerificationStatus.FAILED:
            failure_reason = f"provider status {tx_status}"

        return VerificationResult(
            status=status,
            provider_ref=tx_ref,
            raw_payload=data,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=str(currency).upper() if currency else None,
            failure_reason=failure_reason,
        )

    # ------------------------------------------------------------------ refund

    def refund(self, payment: PaymentRecord, amount: Decimal, idempotency_key: str) -> str:
        refund_id = f"REFUND-{int(time.time() * 1000)}"
        logger.warning(
            "mobile_money_refund_manual",
            payment_id=payment.id,
            tx_ref=payment.provider_ref,
            amount=str(amount),
            refund_id=refund_id,
            note="Mobile-money refunds are settled manually",
        )
        return refund_id

    # ----------------------------------------------------------------- webhook

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """
        Check the HMAC-SHA256 hex digest of the raw body against the signature header.

        Raises:
            SignatureInvalid: signature missing or wrong, or no secret configured
                while signatures are required
        """
        if not self.webhook_secret:
            if self.require_signature:
                logger.error("mobile_money_webhook_secret_missing")
                raise SignatureInvalid("Webhook secret is not configured")
            logger.warning(
                "mobile_money_webhook_unsigned",
                note="No webhook secret configured; skipping signature check",
            )
            return

        signature = next((headers.get(h) for h in SIGNATURE_HEADERS if headers.get(h)), None)
        if not signature:
            raise SignatureInvalid("Missing webhook signature")

        expected = compute_signature(self.webhook_secret, raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise SignatureInvalid()

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotification:
        self.verify_signature(raw_body, headers)

        try:
            payload: dict[str, Any] = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Invalid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON")

        tx_ref = payload.get("tx_ref") or payload.get("trx_ref")
        if not tx_ref:
            raise ValidationError("Missing tx_ref")
        return WebhookNotification(
            provider_ref=tx_ref,
            event_type=payload.get("event") or payload.get("status"),
            payment_method_hint=payload.get("payment_method") or payload.get("payment_type"),
            raw_payload=payload,
        )


def _provider_message(data: dict[str, Any], status_code: int) -> str:
    message = data.get("message")
    if isinstance(message, dict):
        message = json.dumps(message)
    return f"HTTP {status_code}: {message or 'unexpected response'}"
