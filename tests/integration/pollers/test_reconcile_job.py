"""
Integration tests for the background reconciliation job.
"""

from __future__ import annotations

from typing import Generator
from unittest.mock import patch

import pytest

from rental_core.db.readers.bookings import get_booking
from rental_core.db.writers.bookings import set_booking_payment_status
from rental_core.pollers import reconcile
from tests.helpers import OTHER_TENANT, TENANT, Services, approved_booking, paid_booking


@pytest.fixture
def job_services(services: Services) -> Generator[Services, None, None]:
    """Point the job's module-level engine and providers at the test database."""
    with patch.object(reconcile, "engine", services.engine), patch.object(
        reconcile, "get_gateway_registry", return_value=services.registry
    ), patch.object(reconcile, "get_notifier", return_value=services.notifier):
        yield services


@pytest.mark.integration
def test_run_settles_stale_payments_and_completes_stays(job_services: Services) -> None:
    booking, _ = paid_booking(job_services)
    with job_services.engine.begin() as conn:
        set_booking_payment_status(conn, booking.id, "unpaid")

    summary = reconcile.run(older_than_minutes=0)

    assert summary["checked"] == 0
    assert summary["mirrors_repaired"] == 1
    # The June 2024 stay is long over
    assert summary["bookings_completed"] == 1
    with job_services.engine.connect() as conn:
        stored = get_booking(conn, booking.id)
    assert stored.status == "completed"
    assert stored.payment_status == "paid"


@pytest.mark.integration
def test_run_polls_processing_payments(job_services: Services) -> None:
    booking = approved_booking(job_services)
    payment = job_services.ledger.initiate(TENANT, booking.id)
    job_services.gateway.succeed(payment.provider_ref)

    summary = reconcile.run(older_than_minutes=0, complete_bookings=False)

    assert summary["checked"] == 1
    assert summary["succeeded"] == 1
    assert "bookings_completed" not in summary
    assert job_services.notifier.names().count("payment.succeeded") == 1


@pytest.mark.integration
def test_run_leaves_unpaid_stays_open(job_services: Services) -> None:
    approved_booking(job_services, tenant=OTHER_TENANT)

    summary = reconcile.run(older_than_minutes=0)

    assert summary["bookings_completed"] == 0


@pytest.mark.integration
def test_main_parses_arguments() -> None:
    with patch.object(reconcile, "run") as mock_run:
        reconcile.main(["--older-than", "30", "--limit", "5", "--skip-completion"])

    mock_run.assert_called_once_with(older_than_minutes=30, limit=5, complete_bookings=False)
