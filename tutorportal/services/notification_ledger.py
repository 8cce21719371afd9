"""At-most-once delivery of notifications, keyed by a caller-chosen reference.

A row in ``notification_log`` means "this recipient already received this
kind of notification about this event". The unique key on
``(recipient_id, notification_type, reference_id)`` is the only
synchronisation between concurrent sweeps.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import models

logger = logging.getLogger(__name__)


class NotificationType(str, PyEnum):
    etransfer_instructions = "etransfer_instructions"
    pending_approval_received = "pending_approval_received"
    enrollment_confirmed = "enrollment_confirmed"
    reservation_cancelled = "reservation_cancelled"
    etransfer_sent_admin_notice = "etransfer_sent_admin_notice"
    etransfer_lapsed = "etransfer_lapsed"
    pending_approval_expired = "pending_approval_expired"
    etransfer_reminder = "etransfer_reminder"
    pending_approval_reminder = "pending_approval_reminder"
    class_reminder_1day = "class_reminder_1day"
    class_reminder_1hour = "class_reminder_1hour"
    referral_credit = "referral_credit"


class SendOutcome(str, PyEnum):
    sent = "sent"
    skipped = "skipped"
    failed = "failed"


class _DeliveryFailed(Exception):
    pass


def _tag(notification_type: NotificationType | str) -> str:
    if isinstance(notification_type, NotificationType):
        return notification_type.value
    return str(notification_type)


def batch_reference(student_id: int, batch_token: str) -> str:
    return f"{student_id}_{batch_token}"


def occurrence_reference(class_id: int, session_date: date) -> str:
    return f"{class_id}_{session_date.isoformat()}"


def daily_reference(prefix: str, day: date) -> str:
    return f"{prefix}:{day.isoformat()}"


def already_sent(
    db: Session,
    recipient_id: int,
    notification_type: NotificationType | str,
    reference_id: str,
) -> bool:
    found = db.scalar(
        select(models.NotificationRecord.id).where(
            models.NotificationRecord.recipient_id == recipient_id,
            models.NotificationRecord.notification_type == _tag(notification_type),
            models.NotificationRecord.reference_id == reference_id,
        )
    )
    return found is not None


def _insert_record(
    db: Session,
    recipient_id: int,
    notification_type: str,
    reference_id: str,
    now: datetime,
) -> None:
    db.add(
        models.NotificationRecord(
            recipient_id=recipient_id,
            notification_type=notification_type,
            reference_id=reference_id,
            sent_at=now,
        )
    )
    db.flush()


def record_sent(
    db: Session,
    recipient_id: int,
    notification_type: NotificationType | str,
    reference_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    """Insert the marker; returns False when an identical marker already exists."""

    tag = _tag(notification_type)
    savepoint = db.begin_nested()
    try:
        _insert_record(db, recipient_id, tag, reference_id, now or datetime.now(timezone.utc))
    except IntegrityError:
        savepoint.rollback()
        db.commit()
        logger.info(
            "Notification already recorded",
            extra={"recipient_id": recipient_id, "notification_type": tag, "reference_id": reference_id},
        )
        return False
    savepoint.commit()
    db.commit()
    return True


def check_and_send(
    db: Session,
    recipient_id: int,
    notification_type: NotificationType | str,
    reference_id: str,
    send_fn: Callable[[], Any],
    *,
    now: datetime | None = None,
) -> SendOutcome:
    """Deliver once per key; the marker is only kept if delivery succeeded.

    The marker is inserted before calling ``send_fn`` and rolled back if the
    delivery fails, so a concurrent sweep waiting on the same key either sees
    the committed marker or gets to retry after the rollback.

    The savepoint holds the write lock for the whole of ``send_fn``; on SQLite
    that blocks other writers, reservations included, for up to
    ``HTTP_TIMEOUT_SECONDS`` per recipient, so keep that timeout short.
    """

    tag = _tag(notification_type)
    context = {"recipient_id": recipient_id, "notification_type": tag, "reference_id": reference_id}
    if already_sent(db, recipient_id, tag, reference_id):
        db.commit()
        return SendOutcome.skipped

    savepoint = db.begin_nested()
    try:
        _insert_record(db, recipient_id, tag, reference_id, now or datetime.now(timezone.utc))
    except IntegrityError:
        savepoint.rollback()
        db.commit()
        return SendOutcome.skipped

    try:
        result = send_fn()
        if not bool(getattr(result, "ok", result)):
            raise _DeliveryFailed(getattr(result, "error", None) or "delivery not confirmed")
    except _DeliveryFailed as exc:
        savepoint.rollback()
        db.commit()
        logger.warning("Notification delivery failed: %s", exc, extra=context)
        return SendOutcome.failed
    except Exception:
        savepoint.rollback()
        db.commit()
        logger.exception("Notification sender raised", extra=context)
        return SendOutcome.failed

    savepoint.commit()
    db.commit()
    return SendOutcome.sent


__all__ = [
    "NotificationType",
    "SendOutcome",
    "already_sent",
    "record_sent",
    "check_and_send",
    "batch_reference",
    "occurrence_reference",
    "daily_reference",
]
