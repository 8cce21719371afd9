from ...core.security import WebhookSignatureError
from .gateway import BasePaymentGateway, GatewayError, get_gateway
from .stub import StubGateway
from .http_checkout import HttpCheckoutGateway

__all__ = [
    "BasePaymentGateway",
    "GatewayError",
    "WebhookSignatureError",
    "get_gateway",
    "StubGateway",
    "HttpCheckoutGateway",
]
