from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class PropertyUpsertPayload(BaseModel):
    """
    Schema for the property read-model pushed by the listings service.
    """

    owner_id: str = Field(..., description="Owner user id")
    title: Optional[str] = Field(None, description="Listing title")
    monthly_rate: Decimal = Field(..., gt=0, description="Monthly rent in whole currency units")
    currency: str = Field("ETB", min_length=3, max_length=3, description="ISO currency code")
    is_available: bool = Field(True, description="Whether the property accepts bookings")
    min_lease_months: Optional[int] = Field(
        None, ge=0, description="Minimum lease in months (falls back to MIN_LEASE_MONTHS)"
    )
