"""
Shared fixtures for the rental core test suite.

The environment is pinned before any rental_core module is imported: the
config module reads it at import time and refuses to start without a
database URL. Each test gets its own throwaway SQLite file.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Generator

_TMP_DIR = tempfile.mkdtemp(prefix="rental-core-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/app.db"
os.environ["ALLOWED_ORIGINS"] = "*"
os.environ["REQUIRE_WEBHOOK_SIGNATURES"] = "false"
os.environ["MIN_LEASE_MONTHS"] = "0"
for _name in (
    "CHAPA_SECRET_KEY",
    "CHAPA_WEBHOOK_SECRET",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "NOTIFY_WEBHOOK_URL",
):
    os.environ.pop(_name, None)

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402

import rental_core.models.audit  # noqa: E402,F401
import rental_core.models.bookings  # noqa: E402,F401
import rental_core.models.payments  # noqa: E402,F401
import rental_core.models.properties  # noqa: E402,F401
from rental_core.db.engine import build_engine  # noqa: E402
from rental_core.models.base import Base  # noqa: E402
from tests.helpers import FakeGateway, Services, build_services  # noqa: E402


@pytest.fixture
def db_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """Fresh SQLite database with every table created; dropped afterwards."""
    engine = build_engine(f"sqlite:///{tmp_path}/rental.db")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """Mobile-money style fake that mints TX-n references."""
    return FakeGateway()


@pytest.fixture
def services(db_engine: Engine, fake_gateway: FakeGateway) -> Services:
    """Booking service, ledger and coordinator wired to in-memory collaborators."""
    return build_services(db_engine, fake_gateway)


@pytest.fixture
def app(services: Services) -> Generator[FastAPI, None, None]:
    """
    The application with its dependencies resolved to the ``services``
    fixture's engine, fake gateway and recording collaborators.
    """
    from rental_core.dependencies import (
        get_audit_sink,
        get_db_engine,
        get_gateway_registry,
        get_notifier,
    )
    from rental_core.main import app as rental_app

    rental_app.dependency_overrides[get_db_engine] = lambda: services.engine
    rental_app.dependency_overrides[get_gateway_registry] = lambda: services.registry
    rental_app.dependency_overrides[get_notifier] = lambda: services.notifier
    rental_app.dependency_overrides[get_audit_sink] = lambda: services.audit
    yield rental_app
    rental_app.dependency_overrides.clear()


@pytest.fixture
def api_client(app: FastAPI) -> TestClient:
    return TestClient(app)
