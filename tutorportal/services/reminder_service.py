import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db import models
from . import notification_service
from .notification_ledger import SendOutcome, check_and_send, occurrence_reference
from .notification_service import NotificationSender, Recipient
from .recurrence import DueOccurrence, due_occurrence, session_range_for_recipient

logger = logging.getLogger(__name__)


@dataclass
class ReminderSweepResult:
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: SendOutcome) -> None:
        if outcome == SendOutcome.sent:
            self.sent += 1
        elif outcome == SendOutcome.failed:
            self.failed += 1
        else:
            self.skipped += 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _class_recipients(db: Session, class_id: int) -> list[Recipient]:
    student_ids = db.execute(
        select(models.Reservation.student_id)
        .where(
            models.Reservation.class_id == class_id,
            models.Reservation.status == models.ReservationStatus.active,
        )
        .distinct()
        .order_by(models.Reservation.student_id)
    ).scalars().all()
    recipients: list[Recipient] = []
    seen: set[int] = set()
    for student_id in student_ids:
        for recipient in notification_service.student_recipients(db, student_id):
            # a parent with two children in the class gets one reminder
            if recipient.profile_id in seen:
                continue
            seen.add(recipient.profile_id)
            recipients.append(recipient)
    return recipients


def _remind_class(
    db: Session,
    tutoring_class: models.TutoringClass,
    occurrence: DueOccurrence,
    result: ReminderSweepResult,
    *,
    sender: NotificationSender,
    now: datetime,
) -> None:
    notification_type = occurrence.kind.notification_type
    reference_id = occurrence_reference(tutoring_class.id, occurrence.session_date)
    for recipient in _class_recipients(db, tutoring_class.id):
        if not recipient.email:
            result.skipped += 1
            continue
        if not notification_service.allows_class_reminder(recipient.preferences, occurrence.kind.value):
            result.skipped += 1
            continue
        params = {
            "class_name": tutoring_class.name,
            "session_date": occurrence.session_date.isoformat(),
            "session_range": session_range_for_recipient(
                occurrence.session_date,
                tutoring_class.schedule_start_time,
                tutoring_class.schedule_end_time,
                tutoring_class.timezone,
                recipient.timezone,
            ),
            "zoom_link": tutoring_class.zoom_link,
            "reminder_kind": occurrence.kind.value,
            "recipient_name": recipient.display_name,
            "locale": recipient.locale,
            "is_parent_version": recipient.is_guardian,
        }
        outcome = check_and_send(
            db,
            recipient.profile_id,
            notification_type,
            reference_id,
            partial(sender.send, recipient.email, notification_type.value, params),
            now=now,
        )
        result.add(outcome)


def run_reminder_sweep(
    db: Session,
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
) -> ReminderSweepResult:
    """Send 1-day and 1-hour reminders for sessions of the active term."""

    now = now or _utc_now()
    result = ReminderSweepResult()
    term = db.execute(
        select(models.Term).where(models.Term.is_active.is_(True)).order_by(models.Term.id)
    ).scalars().first()
    if term is None:
        db.commit()
        return result
    classes = db.execute(
        select(models.TutoringClass)
        .where(models.TutoringClass.term_id == term.id)
        .order_by(models.TutoringClass.id)
    ).scalars().all()
    db.commit()

    sender = sender or notification_service.get_sender(get_settings())
    for tutoring_class in classes:
        occurrence = due_occurrence(
            tutoring_class.schedule_day,
            tutoring_class.schedule_start_time,
            tutoring_class.timezone,
            term.start_date,
            term.end_date,
            now,
        )
        if occurrence is None:
            continue
        try:
            _remind_class(db, tutoring_class, occurrence, result, sender=sender, now=now)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Class reminder failed", extra={"class_id": tutoring_class.id})
            result.failed += 1
        db.commit()
    logger.info(
        "Class reminder sweep finished",
        extra={"sent": result.sent, "skipped": result.skipped, "failed": result.failed},
    )
    return result


__all__ = ["ReminderSweepResult", "run_reminder_sweep"]
