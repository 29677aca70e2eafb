"""SQLAlchemy model for booking requests."""

from sqlalchemy import (
    TIMESTAMP,
    CheckConstraint,
    Column,
    Date,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)

from rental_core.models.base import Base, JSONType


class Booking(Base):
    """
    ORM model for a tenant's request to occupy a property for [start_date, end_date).

    Amounts are computed once at creation and never updated. payment_status
    mirrors the linked payment and is written only together with it.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("start_date < end_date", name="ck_bookings_date_range"),
        Index("ix_bookings_property_dates", "property_id", "status", "start_date", "end_date"),
    )

    id = Column(String(36), primary_key=True)
    property_id = Column(String(64), nullable=False)
    tenant_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    rent_amount = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    occupants = Column(JSONType, nullable=False)
    message = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, server_default="pending")
    payment_status = Column(String(16), nullable=False, server_default="unpaid")
    payment_id = Column(String(36), nullable=True)
    owner_response = Column(JSONType, nullable=True)
    cancellation = Column(JSONType, nullable=True)
    version = Column(Integer, nullable=False, server_default="1")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
