"""Property read-model sync, price quotes and availability."""

from __future__ import annotations

from datetime import date
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.engine import Engine

from rental_core.db.writers.properties import upsert_properties
from rental_core.dependencies import get_actor, get_booking_service, get_db_engine
from rental_core.errors import RentalError
from rental_core.routes._helpers import require_privileged, to_jsonable
from rental_core.schemas.properties import PropertyUpsertPayload
from rental_core.services.actors import Actor
from rental_core.services.bookings import BookingService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.put("/properties/{property_id}", status_code=status.HTTP_200_OK)
def upsert_property(
    property_id: str,
    payload: PropertyUpsertPayload,
    actor: Actor = Depends(get_actor),
    engine: Engine = Depends(get_db_engine),
) -> dict[str, Any]:
    """
    Create or update the local copy of a property.

    The listings service owns properties; this service keeps only what
    booking and pricing need. Admin or system callers only.
    """
    try:
        require_privileged(actor)
        upsert_properties(engine, [{"id": property_id, **payload.model_dump()}])
        logger.info("property_upserted", property_id=property_id, actor_id=actor.user_id)
        return {"id": property_id, "message": "Property saved"}

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("property_upsert_failed", property_id=property_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/properties/{property_id}/quote")
def quote_property(
    property_id: str,
    start: date = Query(..., description="First night (YYYY-MM-DD)"),
    end: date = Query(..., description="Checkout date (YYYY-MM-DD)"),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    """Price a stay with the same calculator booking creation uses."""
    try:
        quote = service.quote(property_id, start, end)
        return {
            "property_id": property_id,
            "start": start.isoformat(),
            "end": end.isoformat(),
            **quote.as_dict(),
        }

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("quote_failed", property_id=property_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/properties/{property_id}/unavailable-dates")
def property_unavailable_dates(
    property_id: str,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
) -> dict[str, Any]:
    """Date ranges held by pending or approved bookings that have not ended yet."""
    try:
        ranges = service.unavailable_dates(property_id)
        return {"property_id": property_id, "unavailable": to_jsonable(ranges)}

    except (HTTPException, RentalError):
        raise
    except Exception as e:
        logger.exception("unavailable_dates_failed", property_id=property_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")
