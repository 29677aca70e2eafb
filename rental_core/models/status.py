"""Closed value sets stored in status columns."""

from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.APPROVED.value)
TERMINAL_BOOKING_STATUSES = (
    BookingStatus.REJECTED.value,
    BookingStatus.CANCELLED.value,
    BookingStatus.COMPLETED.value,
)


class BookingPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)
TERMINAL_PAYMENT_STATUSES = (
    PaymentStatus.SUCCEEDED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.CANCELLED.value,
)


class PaymentMethod(str, Enum):
    MOBILE_MONEY = "mobile_money"
    CARD = "card"
    MANUAL = "manual"


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"
    AUD = "AUD"
    ETB = "ETB"


class Role(str, Enum):
    TENANT = "tenant"
    OWNER = "owner"
    ADMIN = "admin"
    SYSTEM = "system"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Booking.payment_status derived from the linked Payment.status
PAYMENT_TO_BOOKING_STATUS = {
    PaymentStatus.PENDING.value: BookingPaymentStatus.UNPAID.value,
    PaymentStatus.PROCESSING.value: BookingPaymentStatus.PROCESSING.value,
    PaymentStatus.SUCCEEDED.value: BookingPaymentStatus.PAID.value,
    PaymentStatus.FAILED.value: BookingPaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value: BookingPaymentStatus.UNPAID.value,
    PaymentStatus.REFUNDED.value: BookingPaymentStatus.REFUNDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value: BookingPaymentStatus.REFUNDED.value,
}
