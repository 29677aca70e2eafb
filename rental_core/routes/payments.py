"""Payment initiation, status, history, refunds and admin overrides."""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from rental_core.dependencies import get_actor, get_coordinator, get_payment_ledger
from rental_core.errors import GatewayError, RentalError, ValidationError
from rental_core.gateways.base import Gateway, PayerInfo
from rental_core.models.status import PaymentStatus
from rental_core.routes._helpers import (
    page_envelope,
    payment_to_dict,
    require_privileged,
    to_jsonable,
)
from rental_core.schemas.payments import (
    PaymentInitiatePayload,
    PaymentStatusUpdatePayload,
    RefundPayload,
)
from rental_core.services.actors import Actor
from rental_core.services.ledger import PaymentLedger
from rental_core.services.reconciliation import ReconciliationCoordinator

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/payments/initiate", status_code=status.HTTP_201_CREATED)
def initiate_payment(
    payload: PaymentInitiatePayload,
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> dict[str, Any]:
    """
    Start paying for an approved booking.

    Returns:
        dict: The payment plus what the client needs to finish with the
            provider: a checkout URL (mobile money) or a client secret (card)
    """
    try:
        payer = PayerInfo(**payload.payer.model_dump()) if payload.payer else None
        payment = ledger.initiate(
            actor, payload.booking_id, preference=payload.gateway, payer=payer
        )
        gateway_data = payment.gateway_data or {}
        return {
            "payment": payment_to_dict(payment, actor),
            "checkout_url": gateway_data.get("checkoutUrl"),
            "client_secret": gateway_data.get("clientSecret"),
        }

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_initiation_failed", booking_id=payload.booking_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payments")
def payment_history(
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = Query(None, description="mobile_money, card or manual"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> dict[str, Any]:
    try:
        payments, total = ledger.history(
            actor, status=status_filter, method=method, page=page, limit=limit
        )
        return page_envelope([payment_to_dict(p, actor) for p in payments], total, page, limit)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_history_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payments/{payment_id}")
def get_payment(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> dict[str, Any]:
    try:
        return payment_to_dict(ledger.get(actor, payment_id), actor)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_fetch_failed", payment_id=payment_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payments/{payment_id}/status")
def payment_status(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Poll a payment's status.

    Mobile-money checkouts often finish before the webhook arrives, so a
    processing mobile-money payment is verified with the provider on read.
    A provider outage here is logged and the stored status is returned.
    """
    try:
        payment = ledger.get(actor, payment_id)
        if (
            payment.status == PaymentStatus.PROCESSING.value
            and payment.method == Gateway.MOBILE_MONEY.value
        ):
            try:
                payment = coordinator.reconcile_payment(payment_id, source="poll").payment
            except GatewayError as e:
                logger.warning(
                    "payment_status_verify_failed",
                    payment_id=payment_id,
                    provider_message=e.provider_message,
                )
        return {
            "payment_id": payment.id,
            "booking_id": payment.booking_id,
            "status": payment.status,
            "paid_at": to_jsonable(payment.paid_at),
            "failure_reason": payment.failure_reason,
        }

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_status_failed", payment_id=payment_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payments/{payment_id}/receipt")
def payment_receipt(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> dict[str, Any]:
    try:
        return to_jsonable(ledger.receipt(actor, payment_id))

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_receipt_failed", payment_id=payment_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/payments/{payment_id}/reconcile")
def reconcile_payment(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Force verification with the provider (admin or system)."""
    try:
        require_privileged(actor)
        outcome = coordinator.reconcile_payment(payment_id, source="admin")
        return {
            "payment": payment_to_dict(outcome.payment, actor),
            "changed": outcome.changed,
            "event": outcome.event,
        }

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_reconcile_failed", payment_id=payment_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/payments/{payment_id}/status")
def override_payment_status(
    payment_id: str,
    payload: PaymentStatusUpdatePayload,
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Admin override: retry a failed payment, cancel a pending one, or settle
    a manual payment. Every override goes through the ledger's transition table.
    """
    try:
        if payload.action == "retry":
            payment = ledger.reset_for_retry(actor, payment_id)
        elif payload.action == "cancel":
            payment = ledger.cancel_pending(actor, payment_id)
        else:
            if payload.succeeded is None:
                raise ValidationError("succeeded is required to settle a payment")
            payment = coordinator.settle_manual(
                actor, payment_id, payload.succeeded, note=payload.note
            ).payment
        return payment_to_dict(payment, actor)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception(
            "payment_override_failed", payment_id=payment_id, action=payload.action, error=str(e)
        )
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/payments/{payment_id}/refund")
def refund_payment(
    payment_id: str,
    payload: Optional[RefundPayload] = None,
    idempotency_key: Optional[str] = Header(None),
    actor: Actor = Depends(get_actor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> dict[str, Any]:
    """
    Refund all or part of a settled payment (admin).

    Send an Idempotency-Key header to make client retries safe; a repeated
    key returns the recorded result without refunding twice.
    """
    try:
        payload = payload or RefundPayload()
        payment = ledger.refund(
            actor,
            payment_id,
            amount=payload.amount,
            reason=payload.reason,
            idempotency_key=idempotency_key,
        )
        return payment_to_dict(payment, actor)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("payment_refund_failed", payment_id=payment_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")
