import logging
from collections.abc import Mapping
from typing import Any

import httpx

from ...core.security import verify_webhook_signature
from .gateway import BasePaymentGateway, GatewayError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Payment-Signature"

_STATUS_MAP = {
    "complete": "succeeded",
    "paid": "succeeded",
    "succeeded": "succeeded",
    "expired": "canceled",
    "canceled": "canceled",
    "failed": "failed",
}


class HttpCheckoutGateway(BasePaymentGateway):
    """Hosted checkout reached over HTTP; the student pays on the provider's page."""

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self.settings.payment_api_key:
            headers["Authorization"] = f"Bearer {self.settings.payment_api_key}"
        return headers

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
        if not self.settings.payment_api_url:
            raise GatewayError("Payment API URL is not configured")
        logger.info("Creating checkout session", extra={"order_id": order_id, "amount": amount})
        payload = {
            "mode": "payment",
            "client_reference_id": order_id,
            "currency": currency.lower(),
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {**metadata, "order_id": order_id},
        }
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds) as client:
                response = client.post(
                    f"{self.settings.payment_api_url.rstrip('/')}/checkout/sessions",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("Checkout session request failed", extra={"order_id": order_id})
            raise GatewayError(str(exc)) from exc
        return {
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "status": "pending",
            "redirect_url": body.get("url"),
            "provider_payment_id": body.get("id"),
        }

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> None:
        verify_webhook_signature(
            self.settings.payment_webhook_secret,
            headers.get(SIGNATURE_HEADER),
            body,
            tolerance_seconds=self.settings.payment_webhook_tolerance_seconds,
        )

    def parse_webhook(self, data: dict[str, Any]) -> dict[str, Any]:
        logger.info("Parsing checkout webhook", extra={"event_type": data.get("type")})
        obj = data.get("data", {}).get("object", {})
        metadata = obj.get("metadata") or {}
        raw_status = obj.get("payment_status") or obj.get("status")
        return {
            "order_id": metadata.get("order_id") or obj.get("client_reference_id"),
            "status": _STATUS_MAP.get(raw_status, raw_status),
            "provider_payment_id": obj.get("id"),
        }
