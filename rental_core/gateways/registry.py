"""
Configured gateway adapters and server-side gateway selection.

A gateway is available when its credentials are configured. Clients may send a
preference, but the choice is made here and only among available gateways.
"""

from __future__ import annotations

from typing import Optional

import structlog

from rental_core.config import CHAPA_SECRET_KEY, DEFAULT_GATEWAY, STRIPE_SECRET_KEY
from rental_core.errors import UnsupportedGateway
from rental_core.gateways.base import Gateway, GatewayAdapter

logger = structlog.get_logger(__name__)


class GatewayRegistry:
    """
    Args:
        adapters: Available adapters keyed by gateway
        default: Gateway used when the client expresses no valid preference
    """

    def __init__(
        self,
        adapters: dict[Gateway, GatewayAdapter],
        default: Optional[Gateway] = None,
    ) -> None:
        self.adapters = dict(adapters)
        self.default = default

    def available(self) -> list[Gateway]:
        return [gateway for gateway in Gateway if gateway in self.adapters]

    def get(self, gateway: Gateway | str) -> GatewayAdapter:
        """
        Return the adapter for a gateway.

        Raises:
            UnsupportedGateway: unknown or unconfigured gateway
        """
        try:
            key = Gateway(gateway)
        except ValueError:
            raise UnsupportedGateway(f"Unknown gateway {gateway}")
        adapter = self.adapters.get(key)
        if adapter is None:
            raise UnsupportedGateway(f"Gateway {key.value} is not configured")
        return adapter

    def resolve(self, preference: Optional[str] = None) -> Gateway:
        """
        Pick the gateway for a new payment.

        Order: the client's preference if it names an available gateway, then
        the configured default, then the first available gateway.

        Raises:
            UnsupportedGateway: no gateway is configured at all
        """
        available = self.available()
        if not available:
            raise UnsupportedGateway("No payment gateway is configured")

        if preference:
            try:
                preferred = Gateway(preference.lower())
            except ValueError:
                preferred = None
            if preferred in available:
                return preferred
            logger.info("gateway_preference_ignored", preference=preference)

        if self.default in available:
            return self.default
        return available[0]


def build_default_registry() -> GatewayRegistry:
    """Instantiate adapters for every gateway with credentials in the environment."""
    from rental_core.gateways.card import CardGateway
    from rental_core.gateways.mobile_money import MobileMoneyGateway

    adapters: dict[Gateway, GatewayAdapter] = {}
    if CHAPA_SECRET_KEY:
        adapters[Gateway.MOBILE_MONEY] = MobileMoneyGateway()
    if STRIPE_SECRET_KEY:
        adapters[Gateway.CARD] = CardGateway()

    try:
        default: Optional[Gateway] = Gateway(DEFAULT_GATEWAY)
    except ValueError:
        logger.warning("default_gateway_unknown", value=DEFAULT_GATEWAY)
        default = None

    logger.info("gateways_configured", gateways=[g.value for g in adapters])
    return GatewayRegistry(adapters, default=default)
