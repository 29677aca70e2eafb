"""
Ports to the notification and audit collaborators.

Both are fire-and-forget from the core's point of view: they are called after
the owning transaction has committed, and any exception they raise is logged
and counted, never propagated. A failed notification must not undo a booking
or payment transition.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests
import structlog
from sqlalchemy.engine import Engine

from rental_core.db.writers.audit import insert_audit_log
from rental_core.metrics import collaborator_failures
from rental_core.models.status import Severity

logger = structlog.get_logger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_STATUS_CHANGED = "booking.statusChanged"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"

EVENT_NAMES = (
    BOOKING_CREATED,
    BOOKING_STATUS_CHANGED,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
)


class Notifier(ABC):
    """Outbound logical events for the notification collaborator."""

    @abstractmethod
    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier(Notifier):
    """Writes events to the structured log; the default when no endpoint is configured."""

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("domain_event", event=event, **payload)


class HttpNotifier(Notifier):
    """
    POSTs events as JSON to a notification service.

    Args:
        url: Endpoint receiving {"event": ..., "payload": {...}}
        timeout: Socket timeout in seconds
    """

    def __init__(self, url: str, timeout: float = 3.0) -> None:
        self.url = url
        self.timeout = timeout

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        body = json.dumps({"event": event, "payload": payload}, default=str)
        res = requests.post(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        res.raise_for_status()


class AuditSink(ABC):
    """Write-only audit trail collaborator."""

    @abstractmethod
    def record(
        self,
        action: str,
        target_id: str,
        target_type: str,
        performed_by: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = Severity.LOW.value,
    ) -> None: ...


class DatabaseAuditSink(AuditSink):
    """Appends audit rows in their own short transaction."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(
        self,
        action: str,
        target_id: str,
        target_type: str,
        performed_by: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = Severity.LOW.value,
    ) -> None:
        with self.engine.begin() as conn:
            insert_audit_log(
                conn,
                {
                    "action": action,
                    "target_id": target_id,
                    "target_type": target_type,
                    "performed_by": performed_by,
                    "details": json.loads(json.dumps(details or {}, default=str)),
                    "severity": severity,
                },
            )


def safe_emit(notifier: Notifier, event: str, payload: dict[str, Any]) -> None:
    """Emit an event, logging instead of raising on failure."""
    try:
        notifier.emit(event, payload)
    except Exception as e:
        collaborator_failures.labels(collaborator="notifier").inc()
        logger.error("event_emit_failed", event_name=event, error=str(e))


def safe_record(
    audit: AuditSink,
    action: str,
    target_id: str,
    target_type: str,
    performed_by: str,
    details: Optional[dict[str, Any]] = None,
    severity: str = Severity.LOW.value,
) -> None:
    """Record an audit entry, logging instead of raising on failure."""
    try:
        audit.record(action, target_id, target_type, performed_by, details, severity)
    except Exception as e:
        collaborator_failures.labels(collaborator="audit").inc()
        logger.error(
            "audit_record_failed",
            action=action,
            target_id=target_id,
            target_type=target_type,
            error=str(e),
        )
