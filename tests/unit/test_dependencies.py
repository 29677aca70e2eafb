"""
Unit tests for FastAPI dependency injection.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from rental_core.dependencies import get_actor, get_db_engine, get_notifier
from rental_core.errors import RentalError, Unauthenticated
from rental_core.main import rental_error_handler
from rental_core.services.actors import Actor
from rental_core.services.events import HttpNotifier, LoggingNotifier


@pytest.fixture
def app_with_actor() -> FastAPI:
    """App exposing the resolved caller identity."""
    app = FastAPI()
    app.add_exception_handler(RentalError, rental_error_handler)

    @app.get("/whoami")
    def whoami(actor: Actor = Depends(get_actor)) -> dict[str, str]:
        return {"user_id": actor.user_id, "role": actor.role}

    return app


@pytest.mark.unit
def test_get_db_engine_dependency() -> None:
    """Test that get_db_engine returns the engine instance."""
    engine_gen = get_db_engine()
    engine = next(engine_gen)

    assert engine is not None
    assert isinstance(engine, Engine)


@pytest.mark.unit
def test_get_db_engine_can_be_overridden(db_engine: Engine) -> None:
    """Routes can be pointed at a test engine through dependency overrides."""
    app = FastAPI()

    @app.get("/engine")
    def which_engine(engine: Engine = Depends(get_db_engine)) -> dict[str, str]:
        return {"url": str(engine.url)}

    app.dependency_overrides[get_db_engine] = lambda: db_engine
    response = TestClient(app).get("/engine")

    assert response.json()["url"] == str(db_engine.url)


@pytest.mark.unit
def test_get_actor_reads_identity_headers(app_with_actor: FastAPI) -> None:
    response = TestClient(app_with_actor).get(
        "/whoami", headers={"X-User-Id": "tenant-1", "X-User-Role": "Tenant"}
    )

    assert response.status_code == 200
    assert response.json() == {"user_id": "tenant-1", "role": "tenant"}


@pytest.mark.unit
@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"X-User-Id": "tenant-1"},
        {"X-User-Role": "tenant"},
        {"X-User-Id": "tenant-1", "X-User-Role": "landlord"},
    ],
)
def test_get_actor_rejects_missing_or_unknown_identity(
    app_with_actor: FastAPI, headers: dict[str, str]
) -> None:
    response = TestClient(app_with_actor).get("/whoami", headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthenticated"


@pytest.mark.unit
def test_get_actor_direct_call() -> None:
    assert get_actor("admin-1", "admin") == Actor(user_id="admin-1", role="admin")
    with pytest.raises(Unauthenticated):
        get_actor(None, "admin")


@pytest.mark.unit
def test_get_notifier_defaults_to_logging() -> None:
    with patch("rental_core.dependencies.NOTIFY_WEBHOOK_URL", None):
        assert isinstance(get_notifier(), LoggingNotifier)


@pytest.mark.unit
def test_get_notifier_posts_when_configured() -> None:
    with patch("rental_core.dependencies.NOTIFY_WEBHOOK_URL", "http://notify.test/events"):
        notifier = get_notifier()

    assert isinstance(notifier, HttpNotifier)
    assert notifier.url == "http://notify.test/events"
