"""
Error taxonomy for the booking and payment core.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer maps it to. Route handlers let these propagate; the exception handler
registered in ``rental_core.main`` renders them as::

    {"error": {"code": "date_overlap", "message": "..."}}
"""

from __future__ import annotations

from typing import Any


class RentalError(Exception):
    """Base class for all domain errors raised by the core."""

    code = "error"
    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


# =============================================================================
# Validation (bad input shape or range, not retried)
# =============================================================================


class ValidationError(RentalError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class InvalidDateRange(ValidationError):
    code = "invalid_date_range"
    default_message = "End date must be after start date and start date cannot be in the past"


class InvalidDuration(ValidationError):
    code = "invalid_duration"
    default_message = "Booking is shorter than the minimum lease duration"


class InvalidAmount(ValidationError):
    code = "invalid_amount"
    default_message = "Amount must be greater than zero"


class SelfBooking(ValidationError):
    code = "self_booking"
    default_message = "You cannot book your own property"


class UnsupportedGateway(ValidationError):
    code = "unsupported_gateway"
    default_message = "No payment gateway is available for this request"


# =============================================================================
# State conflicts (caller must re-fetch state)
# =============================================================================


class StateConflict(RentalError):
    code = "state_conflict"
    status_code = 409
    default_message = "The resource is not in a state that allows this operation"


class DateOverlap(StateConflict):
    code = "date_overlap"
    default_message = "Property is already booked for the selected dates"


class PropertyUnavailable(StateConflict):
    code = "property_unavailable"
    default_message = "Property is not available for booking"


class InvalidTransition(StateConflict):
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Cannot change booking status from {from_status} to {to_status}",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class InvalidPaymentTransition(StateConflict):
    code = "invalid_payment_transition"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Cannot change payment status from {from_status} to {to_status}",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class AlreadyPaid(StateConflict):
    code = "already_paid"
    default_message = "Booking is already paid"


class NotApproved(StateConflict):
    code = "not_approved"
    default_message = "Booking must be approved before payment"


class NotSucceeded(StateConflict):
    code = "not_succeeded"
    default_message = "Only successful payments can be refunded"


class RefundExceedsAmount(StateConflict):
    code = "refund_exceeds_amount"
    default_message = "Refund amount cannot exceed the payment amount"


class PaymentInProgress(StateConflict):
    code = "payment_in_progress"
    default_message = "A payment for this booking is already being processed"


class ConcurrentModification(StateConflict):
    code = "concurrent_modification"
    default_message = "The resource was modified concurrently, please retry"


# =============================================================================
# Access and lookup
# =============================================================================


class NotFound(RentalError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found"


class Forbidden(RentalError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action"


class Unauthenticated(RentalError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Caller identity is missing"


# =============================================================================
# Upstream providers and webhooks
# =============================================================================


class GatewayError(RentalError):
    """
    Upstream provider or transport failure.

    ``provider_message`` keeps the provider's own wording for logs; callers only
    ever see the generic retry-later message.
    """

    code = "gateway_error"
    status_code = 502
    default_message = "Payment provider is unavailable, please retry later"

    def __init__(self, provider_message: str, gateway: str | None = None) -> None:
        super().__init__(None, gateway=gateway)
        self.provider_message = provider_message
        self.gateway = gateway

    def __str__(self) -> str:
        return f"{self.gateway or 'gateway'}: {self.provider_message}"


class SignatureInvalid(RentalError):
    code = "invalid_signature"
    status_code = 401
    default_message = "Invalid webhook signature"


InvalidSignature = SignatureInvalid
