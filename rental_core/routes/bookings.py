"""Booking request and lifecycle endpoints."""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from rental_core.dependencies import get_actor, get_booking_service
from rental_core.errors import RentalError
from rental_core.routes._helpers import booking_to_dict, page_envelope
from rental_core.schemas.bookings import (
    BookingCancelPayload,
    BookingCreatePayload,
    BookingTransitionPayload,
)
from rental_core.services.actors import Actor
from rental_core.services.bookings import BookingService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/bookings", status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: BookingCreatePayload,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    """
    Request a booking as a tenant.

    Returns:
        dict: The pending booking, priced server-side

    Raises (rendered by the error handler):
        400 invalid_date_range / invalid_duration / self_booking
        404 not_found, 409 date_overlap / property_unavailable
    """
    try:
        occupants = payload.occupants.model_dump() if payload.occupants else None
        booking = service.create(
            actor,
            payload.property_id,
            payload.start_date,
            payload.end_date,
            occupants=occupants,
            message=payload.message,
        )
        return booking_to_dict(booking)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("booking_creation_failed", property_id=payload.property_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/bookings")
def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    """Bookings visible to the caller, newest first."""
    try:
        bookings, total = service.list_for(actor, status=status_filter, page=page, limit=limit)
        return page_envelope([booking_to_dict(b) for b in bookings], total, page, limit)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("booking_list_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/bookings/stats")
def booking_stats(
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    try:
        stats = service.stats_for(actor)
        return {**stats, "total_revenue": str(stats["total_revenue"])}

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("booking_stats_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/bookings/{booking_id}")
def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    try:
        return booking_to_dict(service.get(actor, booking_id))

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("booking_fetch_failed", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/bookings/{booking_id}")
def update_booking_status(
    booking_id: str,
    payload: BookingTransitionPayload,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    """
    Apply a status transition (approve, reject, cancel, complete).

    Owners and admins approve or reject; tenants may only cancel.
    """
    try:
        booking = service.transition(
            actor, booking_id, payload.status.lower(), message=payload.message
        )
        return booking_to_dict(booking)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("booking_transition_failed", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/bookings/{booking_id}/cancel")
def cancel_booking(
    booking_id: str,
    payload: Optional[BookingCancelPayload] = None,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    try:
        booking = service.cancel(actor, booking_id, reason=payload.reason if payload else None)
        return booking_to_dict(booking)

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("booking_cancel_failed", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")
