from __future__ import annotations

import logging
import sys
from typing import Any, Callable, MutableMapping

import structlog

from rental_core.config import DEBUG, LOG_LEVEL

Processor = Callable[[Any, str, MutableMapping[str, Any]], Any]

SERVICE_NAME = "rental-core"

# HTTP clients and the Stripe SDK log every provider round trip at INFO
QUIET_LOGGERS = ("urllib3", "requests", "stripe", "uvicorn.access")

# Event keys that may carry provider credentials or card checkout secrets
REDACTED_KEYS = frozenset(
    {"authorization", "client_secret", "secret_key", "webhook_secret", "card_number", "cvc"}
)


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential-bearing keys before an event is rendered."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def add_service_name(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _renderer() -> Processor:
    if DEBUG:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.JSONRenderer()


def setup_logging() -> None:
    """
    Route stdlib and structlog output to stdout.

    Events are JSON lines unless LOG_LEVEL=DEBUG, which switches to the
    coloured console renderer. request_id and other values bound through
    structlog.contextvars are merged into every event.
    """
    logging.basicConfig(
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
        level=LOG_LEVEL,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        redact_secrets,
        _renderer(),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
