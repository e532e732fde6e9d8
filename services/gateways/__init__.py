from typing import Dict, Iterable

from core.config import Settings, settings as app_settings
from core.errors import UnsupportedGateway
from services.gateways.base import (  # noqa: F401
    GatewayAdapter,
    GatewayDeclined,
    GatewayEvent,
    GatewayRefundResult,
    GatewayResult,
    GatewayTransportError,
)
from services.gateways.paystack import PaystackGateway
from services.gateways.stripe import StripeGateway


class GatewayRegistry:
    """Adapters available to one request, keyed by gateway type."""

    def __init__(self, adapters: Iterable[GatewayAdapter]):
        self._adapters: Dict[str, GatewayAdapter] = {adapter.name: adapter for adapter in adapters}

    def get(self, gateway_type: str) -> GatewayAdapter:
        adapter = self._adapters.get((gateway_type or "").lower())
        if adapter is None:
            raise UnsupportedGateway(f"Payment gateway '{gateway_type}' is not supported")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayRegistry":
        return cls([
            PaystackGateway(
                base_url=settings.PAYSTACK_BASE_URL,
                secret_key=settings.PAYSTACK_SECRET_KEY,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            ),
            StripeGateway(
                base_url=settings.STRIPE_BASE_URL,
                secret_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
                tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            ),
        ])


def get_gateway_registry() -> GatewayRegistry:
    """FastAPI dependency; tests override it with fake adapters."""
    return GatewayRegistry.from_settings(app_settings)
