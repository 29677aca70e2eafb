"""
Gateway-neutral payment provider interface.

Each provider is one adapter implementing the same small capability set, so
the ledger and the reconciliation coordinator never branch on provider names.

Every remote call goes through ``GatewayAdapter._call``, which bounds it with a
timeout, records metrics, and turns timeouts into GatewayError. There is no
mid-flight cancellation: a call that times out keeps running in its worker
thread and its result is discarded.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping, Optional, TypeVar

import structlog

from rental_core.config import GATEWAY_TIMEOUT_SECONDS
from rental_core.db.records import PaymentRecord
from rental_core.errors import GatewayError
from rental_core.metrics import gateway_latency, gateway_requests

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_CONCURRENT_GATEWAY_CALLS = 16

_executor = ThreadPoolExecutor(
    max_workers=MAX_CONCURRENT_GATEWAY_CALLS, thread_name_prefix="gateway"
)


class Gateway(str, Enum):
    """Closed set of payment providers; values double as Payment.method."""

    MOBILE_MONEY = "mobile_money"
    CARD = "card"


class VerificationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class PayerInfo:
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class InitiationResult:
    """What the client needs to complete payment with the provider."""

    provider_ref: str
    checkout_url: Optional[str] = None
    client_secret: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResult:
    """
    Provider's authoritative view of a transaction.

    ``amount``/``currency`` are what the provider says was charged, when it
    reports them; the coordinator refuses a success whose amount differs
    from the ledger's.
    """

    status: VerificationStatus
    provider_ref: str
    raw_payload: dict[str, Any] = field(default_factory=dict)
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.SUCCEEDED


@dataclass(frozen=True)
class WebhookNotification:
    """A parsed, authenticated provider notification. Only a hint; verify() decides."""

    provider_ref: Optional[str]
    event_type: Optional[str] = None
    payment_method_hint: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    """
    Base class for payment provider adapters.

    Subclasses implement the provider-specific HTTP/SDK calls; callers use
    initiate(), verify(), refund() and parse_webhook() only.

    Args:
        timeout: Upper bound in seconds for any single provider call
    """

    gateway: Gateway

    def __init__(self, timeout: float = GATEWAY_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    def new_reference(self) -> Optional[str]:
        """
        Reference to persist before calling initiate(), if the provider lets us choose it.

        Returns None when the provider assigns the reference itself.
        """
        return None

    @abstractmethod
    def initiate(
        self,
        payment: PaymentRecord,
        payer: PayerInfo,
        provider_ref: Optional[str],
        idempotency_key: str,
    ) -> InitiationResult:
        """Open a transaction at the provider. Raises GatewayError if not accepted."""

    @abstractmethod
    def verify(self, provider_ref: str) -> VerificationResult:
        """Read the transaction state from the provider. Read-only and repeatable."""

    @abstractmethod
    def refund(self, payment: PaymentRecord, amount: Decimal, idempotency_key: str) -> str:
        """Refund ``amount`` of a settled payment and return the refund id."""

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotification:
        """Authenticate and parse a webhook. Raises SignatureInvalid or ValidationError."""

    def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run a provider call under the adapter timeout.

        Args:
            operation: Metric/log label (initiate, verify, refund)
            fn: Callable performing the remote request

        Returns:
            Whatever ``fn`` returns

        Raises:
            GatewayError: on timeout, or as raised by ``fn``
        """
        gateway = self.gateway.value
        start_time = time.time()
        future = _executor.submit(fn, *args, **kwargs)
        try:
            result = future.result(timeout=self.timeout)
        except FuturesTimeout:
            gateway_requests.labels(gateway=gateway, operation=operation, status="timeout").inc()
            logger.warning(
                "gateway_call_timed_out",
                gateway=gateway,
                operation=operation,
                timeout=self.timeout,
            )
            raise GatewayError(f"{operation} timed out after {self.timeout}s", gateway=gateway)
        except GatewayError as e:
            gateway_requests.labels(gateway=gateway, operation=operation, status="error").inc()
            logger.warning(
                "gateway_call_failed",
                gateway=gateway,
                operation=operation,
                provider_message=e.provider_message,
            )
            raise
        finally:
            gateway_latency.labels(gateway=gateway, operation=operation).observe(
                time.time() - start_time
            )

        gateway_requests.labels(gateway=gateway, operation=operation, status="ok").inc()
        return result
