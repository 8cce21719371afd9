import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db import models
from .payments import gateway as gateway_module
from .payments.gateway import BasePaymentGateway, GatewayError

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    pass


_GATEWAY_STATUSES = {
    "succeeded": models.PaymentStatus.paid,
    "paid": models.PaymentStatus.paid,
    "pending": models.PaymentStatus.pending,
    "failed": models.PaymentStatus.failed,
    "canceled": models.PaymentStatus.canceled,
    "cancelled": models.PaymentStatus.canceled,
}


def status_from_gateway(value: str | None) -> models.PaymentStatus | None:
    if value is None:
        return None
    return _GATEWAY_STATUSES.get(value.lower())


def get_payment_by_order(db: Session, order_id: str) -> models.Payment | None:
    return db.execute(
        select(models.Payment).where(models.Payment.order_id == order_id)
    ).scalar_one_or_none()


def start_checkout(
    db: Session,
    student: models.Profile,
    classes: list[models.TutoringClass],
    *,
    gateway: BasePaymentGateway | None = None,
) -> tuple[models.Payment, dict[str, Any]]:
    """Record a pending card payment for ``classes`` and open a charge for it.

    The payment's ``order_id`` later becomes the batch token of the
    reservations created when the charge succeeds.
    """

    settings = get_settings()
    order_id = str(uuid.uuid4())
    currency = (settings.payment_currency or "CAD").upper()
    amount = sum((Decimal(str(item.price or 0)) for item in classes), Decimal("0"))
    payment = models.Payment(
        student_id=student.id,
        class_ids=[item.id for item in classes],
        amount=amount,
        currency=currency,
        provider=models.PaymentProvider(settings.payment_provider),
        order_id=order_id,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    gateway_client = gateway or gateway_module.get_gateway(settings)
    line_items = [
        {"name": item.name, "amount": float(item.price or 0), "quantity": 1, "class_id": item.id}
        for item in classes
    ]
    try:
        gateway_response = gateway_client.create_charge(
            order_id=order_id,
            amount=float(amount),
            currency=currency,
            line_items=line_items,
            success_url=settings.payment_success_url,
            cancel_url=settings.payment_cancel_url,
            metadata={"student_id": student.id, "class_ids": payment.class_ids},
        )
    except GatewayError as exc:
        apply_payment(db, payment, models.PaymentStatus.failed)
        raise PaymentGatewayError("Payment provider is unavailable") from exc

    payment.confirmation_url = gateway_response.get("redirect_url")
    payment.provider_payment_id = gateway_response.get("provider_payment_id")
    db.commit()
    db.refresh(payment)
    logger.info(
        "Checkout started",
        extra={"order_id": order_id, "student_id": student.id, "amount": str(amount)},
    )
    return payment, gateway_response


def apply_payment(
    db: Session,
    payment: models.Payment,
    status: models.PaymentStatus,
    *,
    provider_payment_id: str | None = None,
    now: datetime | None = None,
) -> models.Payment:
    if payment.status == status:
        return payment
    if payment.status == models.PaymentStatus.paid:
        # a paid charge is final; late failure callbacks are ignored
        logger.warning(
            "Ignoring status change for paid payment",
            extra={"order_id": payment.order_id, "status": status.value},
        )
        return payment
    payment.status = status
    payment.updated_at = now or datetime.now(timezone.utc)
    if provider_payment_id:
        payment.provider_payment_id = provider_payment_id
    if status == models.PaymentStatus.paid:
        payment.confirmation_url = None
    db.commit()
    db.refresh(payment)
    return payment
