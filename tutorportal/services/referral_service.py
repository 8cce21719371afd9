import logging
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db import models
from ..db.session import atomic
from . import notification_service
from .notification_ledger import NotificationType

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


class ReferralError(Exception):
    pass


class NoReferralCredit(ReferralError):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _generate_code() -> str:
    return "REF-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def convert_first_referral(
    db: Session,
    candidate_ids: Iterable[int],
    *,
    now: datetime | None = None,
) -> models.Referral | None:
    """Convert the oldest open referral of the first candidate that has one.

    The status filter on the update is what keeps a second call from
    converting the same referral again.
    """

    now = now or _utc_now()
    amount = Decimal(str(get_settings().referral_credit_amount))
    for candidate_id in candidate_ids:
        referral = db.execute(
            select(models.Referral)
            .where(
                models.Referral.referred_student_id == candidate_id,
                models.Referral.status.in_(models.CONVERTIBLE_REFERRAL_STATUSES),
            )
            .order_by(models.Referral.created_at, models.Referral.id)
        ).scalars().first()
        if referral is None:
            continue
        result = db.execute(
            update(models.Referral)
            .where(
                models.Referral.id == referral.id,
                models.Referral.status.in_(models.CONVERTIBLE_REFERRAL_STATUSES),
            )
            .values(
                status=models.ReferralStatus.converted,
                credit_amount=amount,
                converted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            continue
        db.refresh(referral)
        logger.info(
            "Referral converted",
            extra={"referral_id": referral.id, "referrer_id": referral.referrer_id},
        )
        return referral
    return None


def issue_referral_credit(
    db: Session,
    referrer_id: int,
    *,
    sender: notification_service.NotificationSender | None = None,
    now: datetime | None = None,
) -> models.ReferralCredit:
    now = now or _utc_now()
    default_amount = Decimal(str(get_settings().referral_credit_amount))
    with atomic(db):
        referrals = db.execute(
            select(models.Referral)
            .where(
                models.Referral.referrer_id == referrer_id,
                models.Referral.status == models.ReferralStatus.converted,
            )
            .order_by(models.Referral.id)
            .with_for_update()
        ).scalars().all()
        if not referrals:
            raise NoReferralCredit("No converted referrals to credit")
        total = sum(
            (Decimal(str(item.credit_amount)) if item.credit_amount is not None else default_amount
             for item in referrals),
            Decimal("0"),
        )
        credit = models.ReferralCredit(
            referrer_id=referrer_id,
            amount=total,
            code=_generate_code(),
            created_at=now,
        )
        db.add(credit)
        db.flush()
        ids = [item.id for item in referrals]
        result = db.execute(
            update(models.Referral)
            .where(
                models.Referral.id.in_(ids),
                models.Referral.status == models.ReferralStatus.converted,
            )
            .values(
                status=models.ReferralStatus.credited,
                credited_at=now,
                credit_id=credit.id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise ReferralError("Referrals changed while issuing credit")
    db.commit()
    logger.info(
        "Referral credit issued",
        extra={"referrer_id": referrer_id, "credit_id": credit.id, "amount": str(total)},
    )

    referrer = db.get(models.Profile, referrer_id)
    if referrer is not None:
        try:
            notification_service.deliver(
                db,
                [notification_service.recipient_for(referrer)],
                NotificationType.referral_credit,
                f"referral_credit:{credit.id}",
                {"amount": str(total), "code": credit.code, "referral_count": len(ids)},
                sender=sender,
                now=now,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to record referral credit notice", extra={"credit_id": credit.id})
    return credit
