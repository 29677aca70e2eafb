"""
Liveness and readiness probes.

/ready reports the database and which payment gateways this instance can
reach. Only the database gates readiness: without gateways bookings still
work and payments fail fast with ``unsupported_gateway``.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from rental_core.db.engine import check_engine_health
from rental_core.dependencies import get_db_engine, get_gateway_registry
from rental_core.gateways.base import Gateway
from rental_core.gateways.registry import GatewayRegistry

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
def health_check() -> JSONResponse:
    """Process is up. Never touches the database or a provider."""
    return JSONResponse(content={"status": "ok"})


@router.get("/ready")
def readiness_check(
    engine: Engine = Depends(get_db_engine),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> JSONResponse:
    """
    Example:
        >>> GET /ready
        {"status": "ready",
         "checks": {"database": "ok",
                    "gateways": {"mobile_money": "configured", "card": "missing"}}}
    """
    configured = set(gateways.available())
    gateway_checks = {
        gateway.value: "configured" if gateway in configured else "missing" for gateway in Gateway
    }
    database_ok = check_engine_health(engine)
    checks: dict[str, Any] = {
        "database": "ok" if database_ok else "failed",
        "gateways": gateway_checks,
    }

    if not database_ok:
        logger.error("readiness_check_failed", reason="database_not_accessible")
        return JSONResponse(status_code=503, content={"status": "not ready", "checks": checks})

    status = "ready" if configured else "degraded"
    if not configured:
        logger.warning("readiness_degraded", reason="no_payment_gateway_configured")
    return JSONResponse(content={"status": status, "checks": checks})
