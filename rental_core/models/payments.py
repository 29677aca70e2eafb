"""SQLAlchemy models for payments and their refunds."""

from sqlalchemy import (
    TIMESTAMP,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)

from rental_core.models.base import Base, JSONType


class Payment(Base):
    """
    ORM model for a monetary transaction tied to exactly one booking.

    provider_ref is the gateway's transaction reference and is unique inside
    the method namespace; webhooks are resolved through it. At most one open
    (pending or processing) payment may exist per booking.
    """

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("method", "provider_ref", name="uq_payments_method_provider_ref"),
        Index(
            "uq_payments_open_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(String(16), nullable=False)
    status = Column(String(20), nullable=False, server_default="pending", index=True)
    provider_ref = Column(String(128), nullable=True)
    breakdown = Column(JSONType, nullable=False)
    refund = Column(JSONType, nullable=True)
    gateway_data = Column(JSONType, nullable=True)
    provider_payload = Column(JSONType, nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)
    failure_reason = Column(Text, nullable=True)
    invoice_number = Column(String(32), nullable=True, unique=True)
    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, server_default="1")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class PaymentRefund(Base):
    """
    Individual refund against a payment.

    A row is reserved (status ``pending``) before the gateway is called so
    that concurrent refunds count against the refundable balance. The
    idempotency key makes client retries return the stored outcome.
    """

    __tablename__ = "payment_refunds"

    id = Column(String(36), primary_key=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, server_default="pending")
    refund_id = Column(String(128), nullable=True)
    idempotency_key = Column(String(128), nullable=True, unique=True)
    performed_by = Column(String(64), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class PaymentReference(Base):
    """
    Provider reference a payment carried before it was re-armed with a new one.

    Late webhooks and polls for a retired reference resolve to the payment
    through this table; the reference stays unique inside its gateway.
    """

    __tablename__ = "payment_references"
    __table_args__ = (
        UniqueConstraint("method", "provider_ref", name="uq_payment_references_method_ref"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    method = Column(String(16), nullable=False)
    provider_ref = Column(String(128), nullable=False)
    retired_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
