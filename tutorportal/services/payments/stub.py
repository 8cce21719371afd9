from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .gateway import BasePaymentGateway


class StubGateway(BasePaymentGateway):
    """Payment gateway stub that reports every charge as already paid."""

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
        return {
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "status": "succeeded",
            "redirect_url": success_url,
            "line_items": line_items,
            "metadata": metadata,
        }

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> None:
        # the stub never leaves the process, so there is no provider to sign callbacks
        return None

    def parse_webhook(self, data: dict[str, Any]) -> dict[str, Any]:
        # No real callbacks for the stub provider, echo the payload back
        return {
            "order_id": data.get("order_id"),
            "status": data.get("status", "succeeded"),
            "provider_payment_id": data.get("provider_payment_id"),
        }
