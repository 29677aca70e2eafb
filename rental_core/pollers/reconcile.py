"""
Background reconciliation job.

Run periodically (cron, Kubernetes CronJob) alongside the API:

    python -m rental_core.pollers.reconcile

1. Verifies processing payments that no webhook has settled
2. Repairs booking payment-status mirrors that drifted from their payment
3. Completes approved, paid bookings whose stay has ended
"""

import argparse
from typing import Optional, Sequence

import structlog

from rental_core.config import RECONCILE_BATCH_SIZE, RECONCILE_STALE_MINUTES
from rental_core.db.engine import engine
from rental_core.dependencies import get_gateway_registry, get_notifier
from rental_core.logging_config import setup_logging
from rental_core.services.bookings import BookingService
from rental_core.services.events import DatabaseAuditSink
from rental_core.services.reconciliation import ReconciliationCoordinator

setup_logging()
logger = structlog.get_logger(__name__)


def run(
    older_than_minutes: int = RECONCILE_STALE_MINUTES,
    limit: int = RECONCILE_BATCH_SIZE,
    complete_bookings: bool = True,
) -> dict[str, int]:
    notifier = get_notifier()
    audit = DatabaseAuditSink(engine)
    coordinator = ReconciliationCoordinator(engine, get_gateway_registry(), notifier, audit)

    summary = coordinator.reconcile_stale(older_than_minutes=older_than_minutes, limit=limit)
    summary["mirrors_repaired"] = coordinator.repair_booking_mirrors(limit=limit)
    if complete_bookings:
        summary["bookings_completed"] = BookingService(engine, notifier, audit).complete_due(
            limit=limit
        )

    logger.info("reconcile_job_finished", **summary)
    return summary


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Reconcile stale payments and bookings")
    parser.add_argument("--older-than", type=int, default=RECONCILE_STALE_MINUTES,
                        help="Minutes a payment must sit in processing before polling")
    parser.add_argument("--limit", type=int, default=RECONCILE_BATCH_SIZE,
                        help="Maximum rows handled per step")
    parser.add_argument("--skip-completion", action="store_true",
                        help="Do not complete ended bookings")
    args = parser.parse_args(argv)

    run(
        older_than_minutes=args.older_than,
        limit=args.limit,
        complete_bookings=not args.skip_completion,
    )


if __name__ == "__main__":
    main()
