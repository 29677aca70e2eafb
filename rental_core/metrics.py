"""
Prometheus metrics for bookings, payments, gateway calls and webhook handling.

Metrics are exposed via the /metrics endpoint for scraping by Prometheus.

Metric Types:
    - Counter: Cumulative metrics that only increase (e.g., total gateway requests)
    - Histogram: Observations bucketed by value (e.g., gateway latency)

Example:
    >>> from rental_core.metrics import gateway_latency, gateway_requests
    >>> with gateway_latency.labels(gateway="card", operation="verify").time():
    ...     result = adapter.verify("pi_123")
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# =============================================================================
# Booking Metrics
# =============================================================================

bookings_created = Counter(
    "rental_bookings_created_total",
    "Total number of booking requests accepted",
)
"""Counter for bookings persisted in pending status."""

booking_rejections = Counter(
    "rental_booking_rejections_total",
    "Booking creation attempts refused by validation",
    ["reason"],
)
"""
Counter for refused booking creations.

Labels:
    reason: Error code (date_overlap, self_booking, invalid_duration, ...)
"""

booking_transitions = Counter(
    "rental_booking_transitions_total",
    "Booking status transitions applied",
    ["from_status", "to_status", "role"],
)
"""
Counter for booking state machine transitions.

Labels:
    from_status: Status before the transition
    to_status: Status after the transition
    role: Actor role (tenant, owner, admin, system)
"""

# =============================================================================
# Payment Metrics
# =============================================================================

payment_transitions = Counter(
    "rental_payment_transitions_total",
    "Payment status transitions applied",
    ["method", "from_status", "to_status"],
)
"""
Counter for payment ledger transitions.

Labels:
    method: mobile_money, card or manual
    from_status: Status before the transition
    to_status: Status after the transition
"""

payment_version_conflicts = Counter(
    "rental_payment_version_conflicts_total",
    "Optimistic version conflicts on payment updates",
)
"""Counter for lost compare-and-set races on payments (retried by the coordinator)."""

reconciliations = Counter(
    "rental_reconciliations_total",
    "Reconciliation attempts by source and outcome",
    ["source", "outcome"],
)
"""
Counter for reconciliation coordinator runs.

Labels:
    source: webhook, poll, job or admin
    outcome: succeeded, failed, pending, short_circuit, gateway_error
"""

# =============================================================================
# Gateway Metrics
# =============================================================================

gateway_requests = Counter(
    "rental_gateway_requests_total",
    "Calls made to payment providers",
    ["gateway", "operation", "status"],
)
"""
Counter for payment provider calls.

Labels:
    gateway: mobile_money or card
    operation: initiate, verify, refund
    status: ok or error
"""

gateway_latency = Histogram(
    "rental_gateway_latency_seconds",
    "Payment provider call latency in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)
"""
Histogram for payment provider latency.

Buckets: 0.1s, 0.25s, 0.5s, 1s, 2.5s, 5s, 10s, +Inf
"""

# =============================================================================
# Webhook Metrics
# =============================================================================

webhooks_received = Counter(
    "rental_webhooks_received_total",
    "Webhooks received from payment providers",
    ["gateway", "outcome"],
)
"""
Counter for inbound provider webhooks.

Labels:
    gateway: mobile_money or card
    outcome: processed, ignored, invalid_signature, invalid_payload, not_found, error
"""

# =============================================================================
# Collaborator Metrics
# =============================================================================

collaborator_failures = Counter(
    "rental_collaborator_failures_total",
    "Swallowed failures of fire-and-forget collaborators",
    ["collaborator"],
)
"""Counter for notifier/audit failures that were logged and not propagated."""
