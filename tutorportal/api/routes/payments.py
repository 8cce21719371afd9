import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from ...db.session import get_db
from ...db import models
from ...services import payment_service, reservation_service
from ...services.payments import gateway, WebhookSignatureError
from ...config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/webhook")
def payments_webhook(
    request: Request,
    body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
):
    settings = get_settings()
    gateway_client = gateway.get_gateway(settings)
    try:
        gateway_client.verify_webhook(body, request.headers)
    except WebhookSignatureError as exc:
        logger.warning("Rejected payment webhook", extra={"reason": str(exc)})
        raise HTTPException(status_code=401, detail="Invalid webhook signature") from exc
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid webhook") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook")
    parsed = gateway_client.parse_webhook(payload)
    order_id = parsed.get("order_id")
    if not order_id:
        raise HTTPException(status_code=400, detail="Invalid webhook")
    payment = payment_service.get_payment_by_order(db, order_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    status_value = payment_service.status_from_gateway(parsed.get("status")) or models.PaymentStatus.failed
    payment = payment_service.apply_payment(
        db, payment, status_value, provider_payment_id=parsed.get("provider_payment_id")
    )
    if payment.status != models.PaymentStatus.paid:
        return {"status": "ok"}
    try:
        reservation_service.complete_checkout(db, order_id)
    except reservation_service.ReservationError as exc:
        # the charge stays paid and is flagged for a refund; the provider must not retry
        logger.warning("Paid checkout not seated", extra={"order_id": order_id, "reason": str(exc)})
        return {"status": "ok", "seated": False}
    return {"status": "ok", "seated": True}
