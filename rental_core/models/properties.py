"""SQLAlchemy model for the property pricing and availability read-model."""

from sqlalchemy import TIMESTAMP, Boolean, Column, Integer, Numeric, String, func

from rental_core.models.base import Base


class Property(Base):
    """
    Local copy of the listing fields the booking core depends on.

    Listings are owned by the listing service, which pushes changes through
    PUT /properties/{id}. Rows are also used as the lock anchor for booking
    creation on a property.
    """

    __tablename__ = "properties"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    monthly_rate = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="ETB")
    is_available = Column(Boolean, nullable=False, server_default="1")
    min_lease_months = Column(Integer, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
