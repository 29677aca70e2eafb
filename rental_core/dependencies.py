"""
FastAPI dependency injection providers.

Routes receive the engine, the caller identity and the domain services through
these providers. Tests override them with ``app.dependency_overrides`` to inject
a SQLite engine, fake gateways and recording collaborators.
"""

from __future__ import annotations

import threading
from typing import Generator, Optional

from fastapi import Depends, Header
from sqlalchemy.engine import Engine

from rental_core.config import NOTIFY_WEBHOOK_URL
from rental_core.db.engine import engine
from rental_core.errors import Unauthenticated
from rental_core.gateways.registry import GatewayRegistry, build_default_registry
from rental_core.models.status import Role
from rental_core.services.actors import Actor
from rental_core.services.bookings import BookingService
from rental_core.services.events import (
    AuditSink,
    DatabaseAuditSink,
    HttpNotifier,
    LoggingNotifier,
    Notifier,
)
from rental_core.services.ledger import PaymentLedger
from rental_core.services.reconciliation import ReconciliationCoordinator

_registry: Optional[GatewayRegistry] = None
_registry_lock = threading.Lock()

VALID_ROLES = {role.value for role in Role}


def get_db_engine() -> Generator[Engine, None, None]:
    """
    Provide database engine for dependency injection.

    Yields:
        Engine: SQLAlchemy database engine

    Testing Example:
        >>> app.dependency_overrides[get_db_engine] = lambda: sqlite_engine
    """
    yield engine


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """
    Caller identity forwarded by the upstream auth gateway.

    Raises:
        Unauthenticated: either header is missing or the role is unknown
    """
    if not x_user_id or not x_user_role:
        raise Unauthenticated()
    role = x_user_role.strip().lower()
    if role not in VALID_ROLES:
        raise Unauthenticated(f"Unknown role {x_user_role}")
    return Actor(user_id=x_user_id.strip(), role=role)


def get_notifier() -> Notifier:
    if NOTIFY_WEBHOOK_URL:
        return HttpNotifier(NOTIFY_WEBHOOK_URL)
    return LoggingNotifier()


def get_audit_sink(engine: Engine = Depends(get_db_engine)) -> AuditSink:
    return DatabaseAuditSink(engine)


def get_gateway_registry() -> GatewayRegistry:
    """Adapters are built once, on first use, from the environment."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = build_default_registry()
        return _registry


def get_booking_service(
    engine: Engine = Depends(get_db_engine),
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit_sink),
) -> BookingService:
    return BookingService(engine, notifier, audit)


def get_payment_ledger(
    engine: Engine = Depends(get_db_engine),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit_sink),
) -> PaymentLedger:
    return PaymentLedger(engine, gateways, notifier, audit)


def get_coordinator(
    engine: Engine = Depends(get_db_engine),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit_sink),
) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(engine, gateways, notifier, audit)
