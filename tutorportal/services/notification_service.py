from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Iterable

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db import models
from .notification_ledger import NotificationType, SendOutcome, check_and_send

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SendResult:
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class Recipient:
    profile_id: int
    email: str | None
    display_name: str
    role: models.ProfileRole
    timezone: str
    locale: str
    preferences: dict | None = None
    is_guardian: bool = False


@dataclass(slots=True)
class DeliveryReport:
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

    def merge(self, other: "DeliveryReport") -> None:
        self.sent += other.sent
        self.skipped += other.skipped
        self.failed += other.failed


class NotificationSender(ABC):
    """Delivers a rendered message; rendering happens behind ``template_key``."""

    @abstractmethod
    def send(self, address: str, template_key: str, params: dict[str, Any]) -> SendResult:
        raise NotImplementedError


class LogSender(NotificationSender):
    def send(self, address: str, template_key: str, params: dict[str, Any]) -> SendResult:
        logger.info("Notification", extra={"to": address, "template": template_key})
        return SendResult(ok=True)


class HttpNotificationSender(NotificationSender):
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send(self, address: str, template_key: str, params: dict[str, Any]) -> SendResult:
        if not self.settings.notification_api_url:
            logger.warning("Notification API URL is not configured; message not sent")
            return SendResult(ok=False, error="not configured")
        headers = {}
        if self.settings.notification_api_key:
            headers["Authorization"] = f"Bearer {self.settings.notification_api_key}"
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds) as client:
                response = client.post(
                    self.settings.notification_api_url,
                    json={"to": address, "template": template_key, "params": params},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.exception(
                "Failed to deliver notification",
                extra={"to": address, "template": template_key},
            )
            return SendResult(ok=False, error=str(exc))
        return SendResult(ok=True)


def get_sender(settings: Settings) -> NotificationSender:
    if settings.notification_provider == "log":
        return LogSender()
    if settings.notification_provider == "http":
        return HttpNotificationSender(settings)
    raise ValueError(f"Unsupported notification provider {settings.notification_provider}")


def recipient_for(profile: models.Profile, *, is_guardian: bool = False) -> Recipient:
    return Recipient(
        profile_id=profile.id,
        email=(profile.email or "").strip().lower() or None,
        display_name=profile.display_name or profile.email or "Student",
        role=profile.role,
        timezone=profile.timezone,
        locale="zh" if profile.locale == "zh" else "en",
        preferences=profile.notification_preferences,
        is_guardian=is_guardian,
    )


def guardians_of(db: Session, student_ids: Iterable[int]) -> dict[int, list[models.Profile]]:
    ids = list(set(student_ids))
    if not ids:
        return {}
    rows = db.execute(
        select(models.GuardianLink.student_id, models.Profile)
        .join(models.Profile, models.Profile.id == models.GuardianLink.parent_id)
        .where(models.GuardianLink.student_id.in_(ids))
        .where(models.Profile.role == models.ProfileRole.parent)
        .order_by(models.Profile.id)
    ).all()
    result: dict[int, list[models.Profile]] = {}
    for student_id, parent in rows:
        result.setdefault(student_id, []).append(parent)
    return result


def student_recipients(db: Session, student_id: int) -> list[Recipient]:
    """The student followed by linked guardians, one entry per address."""

    student = db.get(models.Profile, student_id)
    if student is None:
        return []
    recipients = [recipient_for(student)]
    for parent in guardians_of(db, [student_id]).get(student_id, []):
        recipients.append(recipient_for(parent, is_guardian=True))
    seen: set[str] = set()
    unique: list[Recipient] = []
    for recipient in recipients:
        if recipient.email and recipient.email in seen:
            continue
        if recipient.email:
            seen.add(recipient.email)
        unique.append(recipient)
    return unique


def admin_recipients(db: Session) -> list[Recipient]:
    admins = db.execute(
        select(models.Profile)
        .where(models.Profile.role == models.ProfileRole.admin)
        .order_by(models.Profile.id)
    ).scalars()
    return [recipient_for(profile) for profile in admins]


def deliver(
    db: Session,
    recipients: Iterable[Recipient],
    notification_type: NotificationType,
    reference_id: str,
    params: dict[str, Any],
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
) -> DeliveryReport:
    sender = sender or get_sender(get_settings())
    report = DeliveryReport()
    for recipient in recipients:
        if not recipient.email:
            report.skipped += 1
            continue
        recipient_params = {
            **params,
            "recipient_name": recipient.display_name,
            "locale": recipient.locale,
            "is_parent_version": recipient.is_guardian,
        }
        outcome = check_and_send(
            db,
            recipient.profile_id,
            notification_type,
            reference_id,
            partial(sender.send, recipient.email, notification_type.value, recipient_params),
            now=now,
        )
        report.add(outcome)
    db.commit()
    return report


def notify_student_and_guardians(
    db: Session,
    student_id: int,
    notification_type: NotificationType,
    reference_id: str,
    params: dict[str, Any],
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
) -> DeliveryReport:
    return deliver(
        db,
        student_recipients(db, student_id),
        notification_type,
        reference_id,
        params,
        sender=sender,
        now=now,
    )


_REMINDER_ALIASES = {
    "both": "both",
    "none": "none",
    "1day": "1day",
    "day_before": "1day",
    "1hour": "1hour",
    "hour_before": "1hour",
}


def class_reminder_preference(preferences: dict | None) -> str:
    value = preferences.get("class_reminders") if isinstance(preferences, dict) else None
    if not isinstance(value, str):
        return "both"
    return _REMINDER_ALIASES.get(value, "both")


def allows_class_reminder(preferences: dict | None, reminder_kind: str) -> bool:
    preference = class_reminder_preference(preferences)
    if preference == "none":
        return False
    if preference == "both":
        return True
    return preference == reminder_kind


def class_summary(reservations: Iterable[models.Reservation]) -> list[dict[str, Any]]:
    summary = []
    for reservation in reservations:
        item = reservation.tutoring_class
        summary.append(
            {
                "class_id": item.id,
                "name": item.name,
                "schedule_day": item.schedule_day,
                "start_time": item.schedule_start_time.strftime("%H:%M"),
                "end_time": item.schedule_end_time.strftime("%H:%M"),
                "timezone": item.timezone,
                "price": str(item.price),
            }
        )
    return summary
