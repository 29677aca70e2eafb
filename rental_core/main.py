# rental_core/main.py

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rental_core.config import ALLOWED_ORIGINS, DEBUG
from rental_core.errors import GatewayError, RentalError
from rental_core.logging_config import setup_logging
from rental_core.middleware import RequestIDMiddleware
from rental_core.routes.bookings import router as bookings_router
from rental_core.routes.health import router as health_router
from rental_core.routes.metrics import router as metrics_router
from rental_core.routes.payments import router as payments_router
from rental_core.routes.properties import router as properties_router
from rental_core.routes.webhooks import router as webhooks_router

API_PREFIX = "/api/v1"

# Initialize structured logging
setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Rental Core API",
    description="Booking lifecycle and payment reconciliation for rental properties",
    version="1.0.0",
    debug=DEBUG,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if "*" not in ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(RentalError)
async def rental_error_handler(request: Request, exc: RentalError) -> JSONResponse:
    """Render domain errors as {"error": {"code", "message"}} with their HTTP status."""
    if isinstance(exc, GatewayError):
        logger.warning(
            "gateway_error_response",
            gateway=exc.gateway,
            provider_message=exc.provider_message,
        )
    elif exc.status_code >= 500:
        logger.error("domain_error_response", code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


# Register routers
app.include_router(health_router, tags=["Health"])
app.include_router(metrics_router, tags=["Metrics"])
app.include_router(properties_router, prefix=API_PREFIX, tags=["Properties"])
app.include_router(bookings_router, prefix=API_PREFIX, tags=["Bookings"])
app.include_router(webhooks_router, prefix=API_PREFIX, tags=["Webhooks"])
app.include_router(payments_router, prefix=API_PREFIX, tags=["Payments"])


@app.on_event("startup")
def startup_event() -> None:
    """Build gateway adapters once so configuration problems surface at boot."""
    from rental_core.dependencies import get_gateway_registry

    logger.info("FastAPI application starting up...")
    registry = get_gateway_registry()
    if not registry.available():
        logger.warning("no_payment_gateway_configured")
    logger.info("FastAPI application initialized")
