from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


class OccupantsPayload(BaseModel):
    adults: int = Field(1, ge=1, description="Number of adults (at least one)")
    children: int = Field(0, ge=0, description="Number of children")


class BookingCreatePayload(BaseModel):
    """
    Schema for a tenant's booking request. Prices are always computed server-side.
    """

    property_id: str = Field(..., description="Property to book")
    start_date: date = Field(..., description="First night of the stay")
    end_date: date = Field(..., description="Checkout date (exclusive)")
    occupants: Optional[OccupantsPayload] = Field(None, description="Defaults to one adult")
    message: Optional[str] = Field(None, max_length=500, description="Note to the owner")


class BookingTransitionPayload(BaseModel):
    status: str = Field(..., description="Target status: approved, rejected, cancelled, completed")
    message: Optional[str] = Field(None, max_length=500, description="Owner response or reason")


class BookingCancelPayload(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Cancellation reason")
