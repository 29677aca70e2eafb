"""
Integration tests for the property read-model writer and the audit sink.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from rental_core.db.writers.properties import upsert_properties
from rental_core.models.audit import AuditLog
from rental_core.models.properties import Property
from rental_core.services.events import DatabaseAuditSink


def row(property_id: str = "prop-1", **overrides):
    data = {
        "id": property_id,
        "owner_id": "owner-1",
        "title": "Flat",
        "monthly_rate": Decimal("3000"),
    }
    data.update(overrides)
    return data


@pytest.mark.integration
def test_upsert_properties_creates_new_records(db_engine) -> None:
    count = upsert_properties(db_engine, [row("prop-1"), row("prop-2", title="House")])

    with db_engine.connect() as conn:
        result = conn.execute(select(Property).order_by(Property.id)).fetchall()

    assert count == 2
    assert [r.id for r in result] == ["prop-1", "prop-2"]
    assert result[1].title == "House"
    assert result[0].currency == "ETB"
    assert result[0].is_available is True


@pytest.mark.integration
def test_upsert_properties_updates_changed_rows(db_engine) -> None:
    upsert_properties(db_engine, [row()])

    upsert_properties(db_engine, [row(monthly_rate=Decimal("3200"), is_available=False)])

    with db_engine.connect() as conn:
        result = conn.execute(select(Property).where(Property.id == "prop-1")).fetchone()
    assert result.monthly_rate == Decimal("3200")
    assert result.is_available is False


@pytest.mark.integration
def test_upsert_properties_skips_update_when_unchanged(db_engine) -> None:
    """Test that unchanged rows keep their updated_at (IS DISTINCT FROM)."""
    upsert_properties(db_engine, [row()])
    with db_engine.connect() as conn:
        initial = conn.execute(select(Property.updated_at).where(Property.id == "prop-1")).scalar()

    upsert_properties(db_engine, [row()])

    with db_engine.connect() as conn:
        final = conn.execute(select(Property.updated_at).where(Property.id == "prop-1")).scalar()
    assert final == initial


@pytest.mark.integration
def test_upsert_properties_skips_rows_without_id(db_engine) -> None:
    assert upsert_properties(db_engine, [{"owner_id": "owner-1", "monthly_rate": 1}]) == 0


@pytest.mark.integration
def test_database_audit_sink_appends_rows(db_engine) -> None:
    sink = DatabaseAuditSink(db_engine)

    sink.record(
        "PAYMENT_REFUNDED",
        "pay-1",
        "Payment",
        "admin-1",
        {"amount": Decimal("100")},
        "high",
    )

    with db_engine.connect() as conn:
        result = conn.execute(select(AuditLog)).fetchall()
    assert len(result) == 1
    assert result[0].action == "PAYMENT_REFUNDED"
    assert result[0].details == {"amount": "100"}
    assert result[0].severity == "high"
