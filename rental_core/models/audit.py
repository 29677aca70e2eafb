"""SQLAlchemy model for the write-only audit trail."""

from sqlalchemy import TIMESTAMP, Column, Integer, String, func

from rental_core.models.base import Base, JSONType


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False, index=True)
    target_id = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    performed_by = Column(String(64), nullable=False)
    details = Column(JSONType, nullable=True)
    severity = Column(String(16), nullable=False, server_default="low")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
