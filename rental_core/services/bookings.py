"""
Booking state machine.

A booking starts ``pending`` and moves through the actor-gated transitions in
``TRANSITIONS``; rejected, cancelled and completed are terminal. Creation is
the only operation that claims dates, so it is the only one serialized per
property: the overlap check and the insert run under the property's lock and
inside one transaction that also holds the property row FOR UPDATE.

Status transitions use an optimistic version check instead of locks; a lost
race surfaces as ConcurrentModification and the caller re-fetches.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.engine import Engine

from rental_core.config import MIN_LEASE_MONTHS, SERVICE_FEE_RATE
from rental_core.db.readers.bookings import (
    booking_stats_for_actor,
    get_booking,
    list_bookings_for_actor,
    list_due_for_completion,
)
from rental_core.db.readers.properties import get_property
from rental_core.db.records import BookingRecord, PropertyRecord
from rental_core.db.writers.bookings import insert_booking, update_booking_versioned
from rental_core.errors import (
    ConcurrentModification,
    DateOverlap,
    Forbidden,
    InvalidDateRange,
    InvalidTransition,
    NotFound,
    PropertyUnavailable,
    RentalError,
    SelfBooking,
    ValidationError,
)
from rental_core.metrics import booking_rejections, booking_transitions, bookings_created
from rental_core.models.status import BookingPaymentStatus, BookingStatus, Role, Severity
from rental_core.services.actors import SYSTEM, Actor
from rental_core.services.events import (
    BOOKING_CREATED,
    BOOKING_STATUS_CHANGED,
    AuditSink,
    Notifier,
    safe_emit,
    safe_record,
)
from rental_core.services.locks import KeyedLocks, property_locks
from rental_core.services.overlap import has_overlap, unavailable_ranges
from rental_core.services.pricing import Quote, price
from rental_core.utils.datetime import utc_now, utc_today

logger = structlog.get_logger(__name__)

MAX_MESSAGE_LENGTH = 500
DEFAULT_OCCUPANTS = {"adults": 1, "children": 0}
NO_REASON = "No reason provided"

PENDING = BookingStatus.PENDING.value
APPROVED = BookingStatus.APPROVED.value
REJECTED = BookingStatus.REJECTED.value
CANCELLED = BookingStatus.CANCELLED.value
COMPLETED = BookingStatus.COMPLETED.value

TENANT = Role.TENANT.value
OWNER = Role.OWNER.value
ADMIN = Role.ADMIN.value
SYSTEM_ROLE = Role.SYSTEM.value

# (from, to) -> roles allowed to apply it
TRANSITIONS: dict[tuple[str, str], frozenset[str]] = {
    (PENDING, APPROVED): frozenset({OWNER, ADMIN}),
    (PENDING, REJECTED): frozenset({OWNER, ADMIN}),
    (PENDING, CANCELLED): frozenset({TENANT, OWNER, ADMIN}),
    (APPROVED, CANCELLED): frozenset({TENANT, OWNER, ADMIN}),
    (APPROVED, COMPLETED): frozenset({OWNER, ADMIN, SYSTEM_ROLE}),
}

AUDIT_ACTIONS = {
    APPROVED: ("BOOKING_APPROVED", Severity.MEDIUM.value),
    REJECTED: ("BOOKING_REJECTED", Severity.MEDIUM.value),
    CANCELLED: ("BOOKING_CANCELLED", Severity.MEDIUM.value),
    COMPLETED: ("BOOKING_COMPLETED", Severity.LOW.value),
}


def party_role(booking: BookingRecord, actor: Actor) -> str:
    """
    Resolve the role the actor plays on this booking.

    Raises:
        Forbidden: actor is neither tenant, owner, admin nor the system
    """
    if actor.is_admin:
        return ADMIN
    if actor.is_system:
        return SYSTEM_ROLE
    if actor.user_id == booking.tenant_id:
        return TENANT
    if actor.user_id == booking.owner_id:
        return OWNER
    raise Forbidden("You are not a party to this booking")


def check_transition(booking: BookingRecord, to_status: str, role: str, today: date) -> None:
    """
    Validate a requested transition against the table and the actor's role.

    Raises:
        InvalidTransition: (from, to) is not in the table, or the system
            completion guard is not met
        Forbidden: role may not apply this transition
    """
    if role == TENANT and to_status != CANCELLED:
        raise Forbidden("Tenants can only cancel their booking requests")
    allowed = TRANSITIONS.get((booking.status, to_status))
    if allowed is None:
        raise InvalidTransition(booking.status, to_status)
    if role not in allowed:
        raise Forbidden(f"{role} cannot move a booking from {booking.status} to {to_status}")
    if role == SYSTEM_ROLE and to_status == COMPLETED:
        if booking.payment_status != BookingPaymentStatus.PAID.value or booking.end_date > today:
            raise InvalidTransition(booking.status, to_status)


def booking_event_payload(booking: BookingRecord, actor: Actor, **extra: Any) -> dict[str, Any]:
    payload = {
        "booking_id": booking.id,
        "property_id": booking.property_id,
        "tenant_id": booking.tenant_id,
        "owner_id": booking.owner_id,
        "status": booking.status,
        "start_date": booking.start_date.isoformat(),
        "end_date": booking.end_date.isoformat(),
        "total_amount": str(booking.total_amount),
        "currency": booking.currency,
        "actor_id": actor.user_id,
        "actor_role": actor.role,
    }
    payload.update(extra)
    return payload


class BookingService:
    """
    Creates bookings and applies status transitions.

    Args:
        engine: SQLAlchemy engine
        notifier: Receives booking.created / booking.statusChanged after commit
        audit: Receives one record per state change
        fee_rate: Service fee fraction used for new bookings
        min_lease_months: Fallback when a property has no minimum of its own
        locks: Registry providing the per-property critical section
    """

    def __init__(
        self,
        engine: Engine,
        notifier: Notifier,
        audit: AuditSink,
        fee_rate: Decimal = SERVICE_FEE_RATE,
        min_lease_months: int = MIN_LEASE_MONTHS,
        locks: KeyedLocks = property_locks,
    ) -> None:
        self.engine = engine
        self.notifier = notifier
        self.audit = audit
        self.fee_rate = fee_rate
        self.min_lease_months = min_lease_months
        self.locks = locks

    # ------------------------------------------------------------------ pricing

    def _quote_for(self, prop: PropertyRecord, start: date, end: date) -> Quote:
        min_lease = (
            prop.min_lease_months if prop.min_lease_months is not None else self.min_lease_months
        )
        return price(
            prop.monthly_rate,
            start,
            end,
            fee_rate=self.fee_rate,
            min_lease_months=min_lease,
            currency=prop.currency,
        )

    def quote(self, property_id: str, start: date, end: date) -> Quote:
        """Price a stay exactly as create() would charge it."""
        with self.engine.connect() as conn:
            prop = get_property(conn, property_id)
        if prop is None:
            raise NotFound(f"Property {property_id} not found")
        return self._quote_for(prop, start, end)

    def unavailable_dates(
        self, property_id: str, today: Optional[date] = None
    ) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            return unavailable_ranges(conn, property_id, today or utc_today())

    # ----------------------------------------------------------------- creation

    def create(
        self,
        actor: Actor,
        property_id: str,
        start: date,
        end: date,
        occupants: Optional[dict[str, int]] = None,
        message: Optional[str] = None,
        today: Optional[date] = None,
    ) -> BookingRecord:
        """
        Create a pending booking request.

        Args:
            actor: Requesting user; anyone but the system actor may book
            property_id: Property to book
            start: First night (not before today)
            end: Checkout date (after start)
            occupants: {"adults": n, "children": m}, defaults to one adult
            message: Optional note to the owner (max 500 characters)
            today: Override for the current date (tests, batch jobs)

        Returns:
            BookingRecord: the persisted booking

        Raises:
            Forbidden, NotFound, PropertyUnavailable, SelfBooking,
            InvalidDateRange, InvalidDuration, DateOverlap, ValidationError
        """
        today = today or utc_today()
        try:
            if actor.is_system:
                raise Forbidden("The system actor cannot request bookings")
            if message is not None and len(message) > MAX_MESSAGE_LENGTH:
                raise ValidationError(
                    f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters"
                )
            booking = self._create_locked(actor, property_id, start, end, occupants, message, today)
        except RentalError as e:
            booking_rejections.labels(reason=e.code).inc()
            logger.info(
                "booking_rejected",
                property_id=property_id,
                tenant_id=actor.user_id,
                reason=e.code,
            )
            raise

        bookings_created.inc()
        logger.info(
            "booking_created",
            booking_id=booking.id,
            property_id=property_id,
            tenant_id=actor.user_id,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            total_amount=str(booking.total_amount),
        )
        safe_record(
            self.audit,
            "BOOKING_CREATED",
            booking.id,
            "Booking",
            actor.user_id,
            {
                "property_id": property_id,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "total_amount": str(booking.total_amount),
            },
            Severity.LOW.value,
        )
        safe_emit(self.notifier, BOOKING_CREATED, booking_event_payload(booking, actor))
        return booking

    def _create_locked(
        self,
        actor: Actor,
        property_id: str,
        start: date,
        end: date,
        occupants: Optional[dict[str, int]],
        message: Optional[str],
        today: date,
    ) -> BookingRecord:
        with self.locks.hold(property_id):
            with self.engine.begin() as conn:
                prop = get_property(conn, property_id, for_update=True)
                if prop is None:
                    raise NotFound(f"Property {property_id} not found")
                if not prop.is_available:
                    raise PropertyUnavailable()
                if prop.owner_id == actor.user_id:
                    raise SelfBooking()
                if end <= start or start < today:
                    raise InvalidDateRange()

                quote = self._quote_for(prop, start, end)

                if has_overlap(conn, property_id, start, end):
                    raise DateOverlap()

                booking_id = str(uuid.uuid4())
                insert_booking(
                    conn,
                    {
                        "id": booking_id,
                        "property_id": property_id,
                        "tenant_id": actor.user_id,
                        "owner_id": prop.owner_id,
                        "start_date": start,
                        "end_date": end,
                        "rent_amount": quote.rent,
                        "service_fee": quote.service_fee,
                        "total_amount": quote.total,
                        "currency": prop.currency,
                        "occupants": dict(occupants or DEFAULT_OCCUPANTS),
                        "message": message,
                        "status": PENDING,
                        "payment_status": BookingPaymentStatus.UNPAID.value,
                    },
                )
                created = get_booking(conn, booking_id)

        assert created is not None
        return created

    # -------------------------------------------------------------- transitions

    def transition(
        self,
        actor: Actor,
        booking_id: str,
        to_status: str,
        message: Optional[str] = None,
        today: Optional[date] = None,
    ) -> BookingRecord:
        """
        Move a booking to ``to_status`` on behalf of ``actor``.

        An owner/admin message is stored as the owner response; on
        cancellation it becomes the cancellation reason.

        Raises:
            NotFound: unknown booking
            Forbidden: actor not a party, or role not allowed
            InvalidTransition: (from, to) not in the transition table
            ConcurrentModification: booking changed since it was read
        """
        today = today or utc_today()
        if message is not None and len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")

        with self.engine.begin() as conn:
            booking = get_booking(conn, booking_id)
            if booking is None:
                raise NotFound(f"Booking {booking_id} not found")

            role = party_role(booking, actor)
            check_transition(booking, to_status, role, today)

            now = utc_now()
            values: dict[str, Any] = {"status": to_status}
            if to_status == CANCELLED:
                values["cancellation"] = {
                    "cancelledBy": actor.user_id,
                    "reason": message or NO_REASON,
                    "cancelledAt": now.isoformat(),
                }
            elif message and role in (OWNER, ADMIN):
                values["owner_response"] = {"message": message, "respondedAt": now.isoformat()}

            if not update_booking_versioned(conn, booking.id, booking.version, values):
                raise ConcurrentModification(f"Booking {booking_id} was modified concurrently")
            updated = get_booking(conn, booking.id)

        assert updated is not None
        from_status = booking.status

        booking_transitions.labels(from_status=from_status, to_status=to_status, role=role).inc()
        logger.info(
            "booking_status_changed",
            booking_id=booking_id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor.user_id,
            role=role,
        )

        action, severity = AUDIT_ACTIONS[to_status]
        safe_record(
            self.audit,
            action,
            booking_id,
            "Booking",
            actor.user_id,
            {"from": from_status, "to": to_status, "message": message},
            severity,
        )
        safe_emit(
            self.notifier,
            BOOKING_STATUS_CHANGED,
            booking_event_payload(updated, actor, previous_status=from_status),
        )
        return updated

    def cancel(self, actor: Actor, booking_id: str, reason: Optional[str] = None) -> BookingRecord:
        return self.transition(actor, booking_id, CANCELLED, message=reason)

    def complete_due(self, today: Optional[date] = None, limit: int = 100) -> int:
        """
        Complete approved, paid bookings whose stay has ended.

        Completion is never triggered by a payment itself; this job is the
        only automatic path and runs as the system actor.

        Returns:
            int: number of bookings completed
        """
        today = today or utc_today()
        with self.engine.connect() as conn:
            due = list_due_for_completion(conn, today, limit=limit)

        completed = 0
        for booking in due:
            try:
                self.transition(SYSTEM, booking.id, COMPLETED, today=today)
                completed += 1
            except RentalError as e:
                logger.warning("booking_completion_skipped", booking_id=booking.id, reason=e.code)
        return completed

    # ------------------------------------------------------------------ queries

    def get(self, actor: Actor, booking_id: str) -> BookingRecord:
        with self.engine.connect() as conn:
            booking = get_booking(conn, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        party_role(booking, actor)
        return booking

    def list_for(
        self,
        actor: Actor,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[BookingRecord], int]:
        with self.engine.connect() as conn:
            return list_bookings_for_actor(
                conn, actor.user_id, actor.role, status=status, page=page, limit=limit
            )

    def stats_for(self, actor: Actor) -> dict[str, Any]:
        with self.engine.connect() as conn:
            stats = booking_stats_for_actor(conn, actor.user_id, actor.role)
        counts = stats["counts"]
        return {
            "total": stats["total"],
            "by_status": {status.value: counts.get(status.value, 0) for status in BookingStatus},
            "total_revenue": stats["total_revenue"],
        }
