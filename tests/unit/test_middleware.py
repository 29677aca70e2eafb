"""
Unit tests for middleware components.
"""

from __future__ import annotations

import pytest
import structlog
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from rental_core.middleware import RequestIDMiddleware


@pytest.fixture
def app_with_middleware() -> FastAPI:
    """Create FastAPI app with RequestIDMiddleware for testing."""
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)

    @app.get("/test")
    async def test_endpoint(request: Request) -> dict[str, str]:
        """Test endpoint that returns the request ID and bound log context."""
        context = structlog.contextvars.get_contextvars()
        return {
            "request_id": request.state.request_id,
            "bound_request_id": context.get("request_id", ""),
            "bound_path": context.get("path", ""),
        }

    return app


@pytest.fixture
def client(app_with_middleware: FastAPI) -> TestClient:
    """FastAPI test client with middleware."""
    return TestClient(app_with_middleware)


@pytest.mark.unit
def test_request_id_middleware_adds_header(client: TestClient) -> None:
    """Test that RequestIDMiddleware adds X-Request-ID header to response."""
    response = client.get("/test")

    assert response.status_code == 200
    assert "X-Request-ID" in response.headers
    assert len(response.headers["X-Request-ID"]) == 36  # UUID length


@pytest.mark.unit
def test_request_id_middleware_stores_in_request_state(client: TestClient) -> None:
    """Test that the id in request.state matches the response header."""
    response = client.get("/test")

    data = response.json()
    assert data["request_id"] == response.headers["X-Request-ID"]


@pytest.mark.unit
def test_request_id_middleware_reuses_incoming_id(client: TestClient) -> None:
    """An upstream X-Request-ID is propagated instead of replaced."""
    response = client.get("/test", headers={"X-Request-ID": "upstream-123"})

    assert response.headers["X-Request-ID"] == "upstream-123"
    assert response.json()["request_id"] == "upstream-123"


@pytest.mark.unit
def test_request_id_middleware_binds_log_context(client: TestClient) -> None:
    """Log lines emitted during the request carry its id and path."""
    response = client.get("/test")

    data = response.json()
    assert data["bound_request_id"] == response.headers["X-Request-ID"]
    assert data["bound_path"] == "/test"


@pytest.mark.unit
def test_request_ids_are_unique(client: TestClient) -> None:
    first = client.get("/test").headers["X-Request-ID"]
    second = client.get("/test").headers["X-Request-ID"]

    assert first != second
