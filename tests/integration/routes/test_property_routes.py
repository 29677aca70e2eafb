"""
Integration tests for /api/v1/properties endpoints.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from rental_core.db.readers.properties import get_property
from tests.helpers import ADMIN, OWNER, PROPERTY_ID, TENANT, Services, auth, seed_property

PROPERTY_BODY = {"owner_id": OWNER.user_id, "title": "Loft", "monthly_rate": "3000"}


@pytest.mark.integration
def test_upsert_property(api_client: TestClient, services: Services) -> None:
    """Test PUT /api/v1/properties/{id} stores the read-model row."""
    response = api_client.put(
        f"/api/v1/properties/{PROPERTY_ID}", json=PROPERTY_BODY, headers=auth(ADMIN)
    )

    assert response.status_code == 200
    assert response.json() == {"id": PROPERTY_ID, "message": "Property saved"}
    with services.engine.connect() as conn:
        prop = get_property(conn, PROPERTY_ID)
    assert prop is not None
    assert prop.owner_id == OWNER.user_id
    assert prop.monthly_rate == Decimal("3000")
    assert prop.currency == "ETB"


@pytest.mark.integration
def test_upsert_property_updates_existing(api_client: TestClient, services: Services) -> None:
    url = f"/api/v1/properties/{PROPERTY_ID}"
    api_client.put(url, json=PROPERTY_BODY, headers=auth(ADMIN))

    changed = {**PROPERTY_BODY, "is_available": False, "monthly_rate": "3500"}
    api_client.put(url, json=changed, headers=auth(ADMIN))

    with services.engine.connect() as conn:
        prop = get_property(conn, PROPERTY_ID)
    assert prop.is_available is False
    assert prop.monthly_rate == Decimal("3500")


@pytest.mark.integration
def test_upsert_property_requires_privileged_caller(api_client: TestClient) -> None:
    response = api_client.put(
        f"/api/v1/properties/{PROPERTY_ID}", json=PROPERTY_BODY, headers=auth(OWNER)
    )

    assert response.status_code == 403


@pytest.mark.integration
def test_upsert_property_validates_rate(api_client: TestClient) -> None:
    response = api_client.put(
        f"/api/v1/properties/{PROPERTY_ID}",
        json={**PROPERTY_BODY, "monthly_rate": "0"},
        headers=auth(ADMIN),
    )

    assert response.status_code == 422


@pytest.mark.integration
def test_quote(api_client: TestClient, services: Services) -> None:
    seed_property(services.engine)

    response = api_client.get(
        f"/api/v1/properties/{PROPERTY_ID}/quote?start=2024-06-01&end=2024-06-10",
        headers=auth(TENANT),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["nights"] == 9
    assert Decimal(data["rent"]) == Decimal("900")
    assert Decimal(data["service_fee"]) == Decimal("45")
    assert Decimal(data["total"]) == Decimal("945")
    assert data["currency"] == "ETB"


@pytest.mark.integration
def test_quote_invalid_range(api_client: TestClient, services: Services) -> None:
    seed_property(services.engine)

    response = api_client.get(
        f"/api/v1/properties/{PROPERTY_ID}/quote?start=2024-06-10&end=2024-06-01",
        headers=auth(TENANT),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_date_range"


@pytest.mark.integration
def test_quote_unknown_property(api_client: TestClient) -> None:
    response = api_client.get(
        "/api/v1/properties/missing/quote?start=2024-06-01&end=2024-06-10", headers=auth(TENANT)
    )

    assert response.status_code == 404


@pytest.mark.integration
def test_unavailable_dates(api_client: TestClient, services: Services) -> None:
    seed_property(services.engine)
    start = date.today() + timedelta(days=30)
    end = start + timedelta(days=9)
    services.bookings.create(TENANT, PROPERTY_ID, start, end)

    response = api_client.get(
        f"/api/v1/properties/{PROPERTY_ID}/unavailable-dates", headers=auth(TENANT)
    )

    assert response.status_code == 200
    assert response.json() == {
        "property_id": PROPERTY_ID,
        "unavailable": [
            {"start_date": start.isoformat(), "end_date": end.isoformat(), "status": "pending"}
        ],
    }
