"""
Payment provider webhook receivers.

A webhook is only a hint that something changed: the body is authenticated
and the provider reference extracted, then the reconciliation coordinator
asks the provider for the authoritative state. Repeated deliveries are
harmless.

Responses:
    200 processed, already processed, or event type ignored
    400 malformed payload
    401 bad signature
    404 unknown provider reference
    502 verification failed transiently (the provider should retry)
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from rental_core.dependencies import get_coordinator, get_gateway_registry
from rental_core.errors import (
    GatewayError,
    NotFound,
    RentalError,
    SignatureInvalid,
    ValidationError,
)
from rental_core.gateways.base import Gateway, WebhookNotification
from rental_core.gateways.registry import GatewayRegistry
from rental_core.metrics import webhooks_received
from rental_core.services.reconciliation import ReconciliationCoordinator, ReconciliationOutcome

router = APIRouter()
logger = structlog.get_logger(__name__)

OUTCOME_BY_ERROR = (
    (SignatureInvalid, "invalid_signature"),
    (ValidationError, "invalid_payload"),
    (NotFound, "not_found"),
    (GatewayError, "gateway_error"),
)


def _error_outcome(error: RentalError) -> str:
    for error_type, outcome in OUTCOME_BY_ERROR:
        if isinstance(error, error_type):
            return outcome
    return "error"


async def handle_webhook(
    gateway: Gateway,
    request: Request,
    registry: GatewayRegistry,
    coordinator: ReconciliationCoordinator,
) -> tuple[WebhookNotification, ReconciliationOutcome | None]:
    """
    Authenticate, parse and reconcile one webhook delivery.

    Returns:
        (notification, outcome); outcome is None for ignored events

    Raises:
        RentalError: rendered by the application's error handler
    """
    raw_body = await request.body()
    try:
        adapter = registry.get(gateway)
        notification = adapter.parse_webhook(raw_body, request.headers)

        if not notification.provider_ref:
            webhooks_received.labels(gateway=gateway.value, outcome="ignored").inc()
            logger.info(
                "webhook_ignored",
                gateway=gateway.value,
                event_type=notification.event_type,
            )
            return notification, None

        logger.info(
            "webhook_received",
            gateway=gateway.value,
            event_type=notification.event_type,
            provider_ref=notification.provider_ref,
        )
        outcome = await run_in_threadpool(
            coordinator.reconcile_reference, gateway, notification.provider_ref, "webhook"
        )
    except RentalError as e:
        webhooks_received.labels(gateway=gateway.value, outcome=_error_outcome(e)).inc()
        logger.warning(
            "webhook_rejected",
            gateway=gateway.value,
            error_code=e.code,
            error=str(e),
        )
        raise

    webhooks_received.labels(gateway=gateway.value, outcome="processed").inc()
    return notification, outcome


@router.post("/payments/webhooks/mobile-money")
async def mobile_money_webhook(
    request: Request,
    registry: GatewayRegistry = Depends(get_gateway_registry),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Mobile-money (Chapa-style) callback.

    Expected payload:
        {"tx_ref": "TX-...", "status": "success", "reference": "...", ...}
    signed with an HMAC-SHA256 hex digest in Chapa-Signature.
    """
    await handle_webhook(Gateway.MOBILE_MONEY, request, registry, coordinator)
    return {"success": True}


@router.post("/payments/webhooks/card")
async def card_webhook(
    request: Request,
    registry: GatewayRegistry = Depends(get_gateway_registry),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Card (Stripe) event endpoint. Only payment_intent.succeeded and
    payment_intent.payment_failed are acted upon; other events are acknowledged.
    """
    await handle_webhook(Gateway.CARD, request, registry, coordinator)
    return {"received": True}
