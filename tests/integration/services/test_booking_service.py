"""
Integration tests for booking creation and the booking state machine.
"""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal

import pytest

from rental_core.db.readers.bookings import get_booking
from rental_core.db.writers.bookings import update_booking_versioned
from rental_core.errors import (
    DateOverlap,
    Forbidden,
    InvalidDateRange,
    InvalidDuration,
    InvalidTransition,
    NotFound,
    PropertyUnavailable,
    RentalError,
    SelfBooking,
    ValidationError,
)
from rental_core.services.actors import SYSTEM, Actor
from tests.helpers import (
    ADMIN,
    OTHER_TENANT,
    OWNER,
    PROPERTY_ID,
    STAY_END,
    STAY_START,
    TENANT,
    TODAY,
    Services,
    approved_booking,
    create_booking,
    paid_booking,
    seed_property,
)


@pytest.mark.integration
def test_create_prices_and_persists_pending_booking(services: Services) -> None:
    seed_property(services.engine)

    booking = create_booking(services)

    assert booking.status == "pending"
    assert booking.payment_status == "unpaid"
    assert booking.rent_amount == Decimal("900")
    assert booking.service_fee == Decimal("45")
    assert booking.total_amount == Decimal("945")
    assert booking.currency == "ETB"
    assert booking.owner_id == OWNER.user_id
    assert booking.occupants == {"adults": 1, "children": 0}
    assert booking.version == 1
    assert services.notifier.names() == ["booking.created"]
    assert services.audit.actions() == ["BOOKING_CREATED"]


@pytest.mark.integration
def test_quote_matches_created_booking(services: Services) -> None:
    seed_property(services.engine)

    quote = services.bookings.quote(PROPERTY_ID, STAY_START, STAY_END)
    booking = create_booking(services)

    assert (quote.rent, quote.service_fee, quote.total) == (
        booking.rent_amount,
        booking.service_fee,
        booking.total_amount,
    )


@pytest.mark.integration
def test_create_refused_for_system_actor(services: Services) -> None:
    seed_property(services.engine)

    with pytest.raises(Forbidden):
        services.bookings.create(SYSTEM, PROPERTY_ID, STAY_START, STAY_END, today=TODAY)


@pytest.mark.integration
def test_owner_role_may_book_another_owners_property(services: Services) -> None:
    seed_property(services.engine)
    other_owner = Actor(user_id="owner-2", role="owner")

    booking = create_booking(services, tenant=other_owner)

    assert booking.status == "pending"
    assert booking.tenant_id == "owner-2"
    assert booking.owner_id == OWNER.user_id


@pytest.mark.integration
def test_create_unknown_property(services: Services) -> None:
    with pytest.raises(NotFound):
        create_booking(services)


@pytest.mark.integration
def test_create_unavailable_property(services: Services) -> None:
    seed_property(services.engine, is_available=False)

    with pytest.raises(PropertyUnavailable):
        create_booking(services)


@pytest.mark.integration
def test_owner_cannot_book_own_property(services: Services) -> None:
    seed_property(services.engine)

    with pytest.raises(SelfBooking):
        create_booking(services, tenant=OWNER)


@pytest.mark.integration
@pytest.mark.parametrize(
    "start,end",
    [
        (date(2024, 4, 20), date(2024, 5, 10)),  # starts before today
        (date(2024, 6, 10), date(2024, 6, 10)),
        (date(2024, 6, 10), date(2024, 6, 1)),
    ],
)
def test_create_rejects_bad_ranges(services: Services, start: date, end: date) -> None:
    seed_property(services.engine)

    with pytest.raises(InvalidDateRange):
        create_booking(services, start=start, end=end)


@pytest.mark.integration
def test_create_enforces_property_minimum_lease(services: Services) -> None:
    seed_property(services.engine, min_lease_months=2)

    with pytest.raises(InvalidDuration):
        create_booking(services)


@pytest.mark.integration
def test_create_rejects_long_message(services: Services) -> None:
    seed_property(services.engine)

    with pytest.raises(ValidationError):
        services.bookings.create(
            TENANT, PROPERTY_ID, STAY_START, STAY_END, message="x" * 501, today=TODAY
        )


@pytest.mark.integration
def test_overlapping_request_is_refused(services: Services) -> None:
    seed_property(services.engine)
    create_booking(services)

    with pytest.raises(DateOverlap):
        create_booking(services, tenant=OTHER_TENANT, start=date(2024, 6, 5), end=date(2024, 6, 20))


@pytest.mark.integration
def test_back_to_back_stays_do_not_overlap(services: Services) -> None:
    seed_property(services.engine)
    create_booking(services)

    follow_up = create_booking(
        services, tenant=OTHER_TENANT, start=STAY_END, end=date(2024, 6, 20)
    )

    assert follow_up.status == "pending"


@pytest.mark.integration
def test_rejected_booking_frees_dates(services: Services) -> None:
    seed_property(services.engine)
    first = create_booking(services)
    services.bookings.transition(OWNER, first.id, "rejected", today=TODAY)

    second = create_booking(services, tenant=OTHER_TENANT)

    assert second.status == "pending"


@pytest.mark.integration
def test_concurrent_requests_for_same_dates_admit_one(services: Services) -> None:
    """Two tenants racing for the same nights: one pending booking, one DateOverlap."""
    seed_property(services.engine)
    barrier = threading.Barrier(2)
    results: list[object] = []

    def request(tenant: Actor) -> None:
        barrier.wait()
        try:
            results.append(create_booking(services, tenant=tenant))
        except RentalError as e:
            results.append(e)

    threads = [threading.Thread(target=request, args=(t,)) for t in (TENANT, OTHER_TENANT)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    errors = [r for r in results if isinstance(r, RentalError)]
    created = [r for r in results if not isinstance(r, RentalError)]
    assert len(created) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], DateOverlap)

    bookings, total = services.bookings.list_for(ADMIN)
    assert total == 1
    assert bookings[0].status == "pending"


# =============================================================================
# Transitions
# =============================================================================


@pytest.mark.integration
def test_owner_approves_with_message(services: Services) -> None:
    seed_property(services.engine)
    booking = create_booking(services)

    approved = services.bookings.transition(
        OWNER, booking.id, "approved", message="Welcome!", today=TODAY
    )

    assert approved.status == "approved"
    assert approved.version == booking.version + 1
    assert approved.owner_response is not None
    assert approved.owner_response["message"] == "Welcome!"

    event, payload = services.notifier.events[-1]
    assert event == "booking.statusChanged"
    assert payload["previous_status"] == "pending"
    assert payload["status"] == "approved"
    assert services.audit.actions()[-1] == "BOOKING_APPROVED"


@pytest.mark.integration
def test_tenant_cannot_approve(services: Services) -> None:
    seed_property(services.engine)
    booking = create_booking(services)

    with pytest.raises(Forbidden):
        services.bookings.transition(TENANT, booking.id, "approved", today=TODAY)

    with services.engine.connect() as conn:
        stored = get_booking(conn, booking.id)
    assert stored is not None
    assert stored.status == "pending"


@pytest.mark.integration
def test_stranger_cannot_touch_booking(services: Services) -> None:
    seed_property(services.engine)
    booking = create_booking(services)

    with pytest.raises(Forbidden):
        services.bookings.transition(OTHER_TENANT, booking.id, "cancelled", today=TODAY)
    with pytest.raises(Forbidden):
        services.bookings.get(OTHER_TENANT, booking.id)


@pytest.mark.integration
def test_tenant_cancels_with_reason(services: Services) -> None:
    booking = approved_booking(services)

    cancelled = services.bookings.cancel(TENANT, booking.id, reason="Plans changed")

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation is not None
    assert cancelled.cancellation["cancelledBy"] == TENANT.user_id
    assert cancelled.cancellation["reason"] == "Plans changed"


@pytest.mark.integration
def test_cancel_without_reason_uses_default(services: Services) -> None:
    seed_property(services.engine)
    booking = create_booking(services)

    cancelled = services.bookings.cancel(OWNER, booking.id)

    assert cancelled.cancellation["reason"] == "No reason provided"


@pytest.mark.integration
def test_terminal_booking_cannot_move(services: Services) -> None:
    seed_property(services.engine)
    booking = create_booking(services)
    services.bookings.transition(OWNER, booking.id, "rejected", today=TODAY)

    with pytest.raises(InvalidTransition):
        services.bookings.transition(OWNER, booking.id, "approved", today=TODAY)


@pytest.mark.integration
def test_transition_unknown_booking(services: Services) -> None:
    with pytest.raises(NotFound):
        services.bookings.transition(OWNER, "missing", "approved", today=TODAY)


@pytest.mark.integration
def test_versioned_update_refuses_stale_version(services: Services) -> None:
    seed_property(services.engine)
    booking = create_booking(services)
    services.bookings.transition(OWNER, booking.id, "approved", today=TODAY)

    with services.engine.begin() as conn:
        applied = update_booking_versioned(
            conn, booking.id, booking.version, {"status": "rejected"}
        )

    assert applied is False


@pytest.mark.integration
def test_owner_may_complete_approved_booking(services: Services) -> None:
    booking = approved_booking(services)

    completed = services.bookings.transition(OWNER, booking.id, "completed", today=TODAY)

    assert completed.status == "completed"


@pytest.mark.integration
def test_complete_due_only_completes_paid_ended_stays(services: Services) -> None:
    booking, _ = paid_booking(services)

    assert services.bookings.complete_due(today=date(2024, 6, 5)) == 0
    assert services.bookings.complete_due(today=date(2024, 6, 11)) == 1

    with services.engine.connect() as conn:
        stored = get_booking(conn, booking.id)
    assert stored is not None
    assert stored.status == "completed"
    assert stored.payment_status == "paid"


@pytest.mark.integration
def test_complete_due_skips_unpaid(services: Services) -> None:
    approved_booking(services)

    assert services.bookings.complete_due(today=date(2024, 7, 1)) == 0


# =============================================================================
# Queries
# =============================================================================


@pytest.mark.integration
def test_list_visibility_by_role(services: Services) -> None:
    seed_property(services.engine)
    seed_property(services.engine, property_id="prop-2", owner_id="owner-2")
    create_booking(services)
    services.bookings.create(
        OTHER_TENANT, "prop-2", STAY_START, STAY_END, today=TODAY
    )

    tenant_items, tenant_total = services.bookings.list_for(TENANT)
    owner_items, owner_total = services.bookings.list_for(OWNER)
    _, admin_total = services.bookings.list_for(ADMIN)

    assert tenant_total == 1
    assert tenant_items[0].tenant_id == TENANT.user_id
    assert owner_total == 1
    assert owner_items[0].property_id == PROPERTY_ID
    assert admin_total == 2


@pytest.mark.integration
def test_list_filters_and_paginates(services: Services) -> None:
    seed_property(services.engine)
    for month in (6, 7, 8):
        services.bookings.create(
            TENANT, PROPERTY_ID, date(2024, month, 1), date(2024, month, 10), today=TODAY
        )

    page_one, total = services.bookings.list_for(TENANT, page=1, limit=2)
    page_two, _ = services.bookings.list_for(TENANT, page=2, limit=2)
    approved, approved_total = services.bookings.list_for(TENANT, status="approved")

    assert total == 3
    assert len(page_one) == 2
    assert len(page_two) == 1
    assert approved == []
    assert approved_total == 0


@pytest.mark.integration
def test_stats_count_statuses_and_paid_revenue(services: Services) -> None:
    paid_booking(services)
    services.bookings.create(
        OTHER_TENANT, PROPERTY_ID, date(2024, 7, 1), date(2024, 7, 10), today=TODAY
    )

    stats = services.bookings.stats_for(OWNER)

    assert stats["total"] == 2
    assert stats["by_status"]["approved"] == 1
    assert stats["by_status"]["pending"] == 1
    assert stats["by_status"]["completed"] == 0
    assert stats["total_revenue"] == Decimal("945")


@pytest.mark.integration
def test_unavailable_dates_lists_active_bookings(services: Services) -> None:
    seed_property(services.engine)
    first = create_booking(services)
    second = services.bookings.create(
        OTHER_TENANT, PROPERTY_ID, date(2024, 7, 1), date(2024, 7, 10), today=TODAY
    )
    services.bookings.transition(OWNER, second.id, "rejected", today=TODAY)

    ranges = services.bookings.unavailable_dates(PROPERTY_ID, today=TODAY)

    assert len(ranges) == 1
    assert ranges[0]["status"] == first.status
