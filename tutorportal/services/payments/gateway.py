from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any
from ...config import Settings


class GatewayError(Exception):
    """The provider could not be reached or rejected the request."""


class BasePaymentGateway(ABC):
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    def create_charge(
        self,
        order_id: str,
        amount: float,
        currency: str,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        """Start a one-time charge; the result carries ``redirect_url`` and ``status``."""
        raise NotImplementedError

    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> None:
        """Raise ``WebhookSignatureError`` unless the callback came from the provider."""
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, data: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


def get_gateway(settings: Settings) -> BasePaymentGateway:
    if settings.payment_provider == "stub":
        from .stub import StubGateway

        return StubGateway(settings)
    if settings.payment_provider == "http":
        from .http_checkout import HttpCheckoutGateway

        return HttpCheckoutGateway(settings)
    raise ValueError(f"Unsupported payment provider {settings.payment_provider}")
