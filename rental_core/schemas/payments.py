from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


class PayerPayload(BaseModel):
    email: Optional[str] = Field(None, description="Receipt email")
    first_name: Optional[str] = Field(None, description="Payer first name")
    last_name: Optional[str] = Field(None, description="Payer last name")
    phone_number: Optional[str] = Field(None, description="Mobile-money phone number")


class PaymentInitiatePayload(BaseModel):
    """
    Schema for starting a payment. The amount is taken from the booking;
    ``gateway`` is only a preference and may be overridden by configuration.
    """

    booking_id: str = Field(..., description="Approved booking to pay for")
    gateway: Optional[str] = Field(
        None, description="Preferred gateway: mobile_money, card, manual"
    )
    payer: Optional[PayerPayload] = Field(None, description="Payer contact details")


class RefundPayload(BaseModel):
    amount: Optional[Decimal] = Field(
        None, description="Defaults to the remaining refundable amount"
    )
    reason: Optional[str] = Field(None, max_length=500, description="Refund reason")


class PaymentStatusUpdatePayload(BaseModel):
    """
    Admin override of a payment's status.

    - retry: failed -> pending with a fresh provider reference
    - cancel: pending -> cancelled
    - settle: record the outcome of a manual payment
    """

    action: Literal["retry", "cancel", "settle"] = Field(..., description="Override to apply")
    succeeded: Optional[bool] = Field(None, description="Outcome for action=settle")
    note: Optional[str] = Field(None, max_length=500, description="Admin note")
