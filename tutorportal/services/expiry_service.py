"""Time-driven transitions of held reservations.

``run_expiry_sweep`` lapses e-transfer holds and drops unapproved
registrations whose deadline passed, one batch at a time. It is safe to run
concurrently with itself and with admin confirmations: every transition is a
compare-and-set on the expected status, and notices go through the dedup
ledger.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import (
    DEFAULT_TIMEZONE,
    EXPIRY_NOTICE_RETRY_WINDOW,
    HOLD_EXPIRED_REASON,
    HOLD_REMINDER_HORIZON,
    HOLD_REMINDER_MIN_AGE,
    SYSTEM_ACTOR,
)
from ..db import models
from ..db.session import as_utc, atomic
from . import notification_service
from .notification_ledger import NotificationType, batch_reference, daily_reference
from .notification_service import DeliveryReport, NotificationSender

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (
    models.ReservationStatus.pending_etransfer,
    models.ReservationStatus.pending_approval,
)

_TERMINAL_BY_STATUS = {
    models.ReservationStatus.pending_etransfer: models.ReservationStatus.etransfer_lapsed,
    models.ReservationStatus.pending_approval: models.ReservationStatus.dropped,
}

_NOTICE_BY_TERMINAL = {
    models.ReservationStatus.etransfer_lapsed: NotificationType.etransfer_lapsed,
    models.ReservationStatus.dropped: NotificationType.pending_approval_expired,
}


@dataclass
class SweepResult:
    expired_count: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    anomalies: int = 0
    errors: list[str] = field(default_factory=list)


class _BatchChanged(Exception):
    """A member left its expected status between the scan and the update."""


@dataclass(frozen=True)
class _GroupKey:
    batch_token: str | None
    reservation_id: int | None

    @property
    def label(self) -> str:
        if self.batch_token:
            return self.batch_token
        return f"reservation-{self.reservation_id}"

    def reference(self, student_id: int) -> str:
        return batch_reference(student_id, self.label)


@dataclass
class _Lapsed:
    student_id: int
    terminal: models.ReservationStatus
    reservations: list[models.Reservation]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _group(rows: Iterable[models.Reservation]) -> dict[_GroupKey, list[models.Reservation]]:
    groups: dict[_GroupKey, list[models.Reservation]] = {}
    for row in rows:
        if row.batch_token:
            key = _GroupKey(batch_token=row.batch_token, reservation_id=None)
        else:
            key = _GroupKey(batch_token=None, reservation_id=row.id)
        groups.setdefault(key, []).append(row)
    return groups


def _load_members(db: Session, key: _GroupKey) -> list[models.Reservation]:
    stmt = select(models.Reservation)
    if key.batch_token:
        stmt = stmt.where(models.Reservation.batch_token == key.batch_token)
    else:
        stmt = stmt.where(models.Reservation.id == key.reservation_id)
    stmt = stmt.order_by(models.Reservation.id).with_for_update()
    return list(db.execute(stmt.execution_options(populate_existing=True)).scalars())


def _anomaly_reason(members: list[models.Reservation], now: datetime) -> str | None:
    if len({member.student_id for member in members}) > 1:
        return "mixed_students"
    if len({member.status for member in members}) > 1:
        return "mixed_statuses"
    for member in members:
        expires_at = as_utc(member.hold_expires_at)
        if expires_at is None or expires_at >= now:
            return "unexpired_member"
    return None


def _record_anomaly(
    db: Session, key: _GroupKey, members: list[models.Reservation], reason: str, now: datetime
) -> None:
    logger.warning(
        "Skipping inconsistent reservation batch",
        extra={"batch": key.label, "reason": reason},
    )
    logged = db.scalar(
        select(models.AuditLog.id).where(
            models.AuditLog.action == "reservation_batch_anomaly",
            models.AuditLog.subject == key.label,
        )
    )
    if logged is not None:
        return
    db.add(
        models.AuditLog(
            actor_type=models.ActorType.system,
            action="reservation_batch_anomaly",
            subject=key.label,
            payload={
                "reason": reason,
                "members": [
                    {"id": member.id, "student_id": member.student_id, "status": member.status.value}
                    for member in members
                ],
            },
            created_at=now,
        )
    )


def _expire_group(db: Session, key: _GroupKey, now: datetime) -> _Lapsed | str | None:
    """Lapse one group; returns the anomaly reason when the group is skipped."""

    with atomic(db):
        members = _load_members(db, key)
        if not any(member.status in EXPIRABLE_STATUSES for member in members):
            # confirmed, cancelled or lapsed by someone else since the scan
            return None
        reason = _anomaly_reason(members, now)
        if reason is not None:
            _record_anomaly(db, key, members, reason, now)
            return reason
        expected = members[0].status
        terminal = _TERMINAL_BY_STATUS[expected]
        ids = [member.id for member in members]
        result = db.execute(
            update(models.Reservation)
            .where(models.Reservation.id.in_(ids), models.Reservation.status == expected)
            .values(
                status=terminal,
                updated_at=now,
                resolved_at=now,
                resolved_by=SYSTEM_ACTOR,
                resolution_reason=HOLD_EXPIRED_REASON,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise _BatchChanged()
    if db.in_transaction():
        db.commit()
    members = _load_members(db, key)
    db.commit()
    return _Lapsed(student_id=members[0].student_id, terminal=terminal, reservations=members)


def _send_lapse_notice(
    db: Session,
    key: _GroupKey,
    lapsed: _Lapsed,
    result: SweepResult,
    *,
    sender: NotificationSender | None,
    now: datetime,
) -> None:
    try:
        report = notification_service.notify_student_and_guardians(
            db,
            lapsed.student_id,
            _NOTICE_BY_TERMINAL[lapsed.terminal],
            key.reference(lapsed.student_id),
            {
                "classes": notification_service.class_summary(lapsed.reservations),
                "batch_token": key.batch_token,
                "register_url": f"{get_settings().portal_url}/register",
            },
            sender=sender,
            now=now,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to send lapse notice", extra={"batch": key.label})
        result.errors.append(f"{key.label}: {exc}")
        return
    result.notifications_sent += report.sent
    result.notifications_failed += report.failed


def run_expiry_sweep(
    db: Session,
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
) -> SweepResult:
    now = now or _utc_now()
    result = SweepResult()
    expired = db.execute(
        select(models.Reservation)
        .where(
            models.Reservation.status.in_(EXPIRABLE_STATUSES),
            models.Reservation.hold_expires_at < now,
        )
        .order_by(models.Reservation.id)
    ).scalars().all()
    db.commit()

    handled: set[_GroupKey] = set()
    for key in _group(expired):
        handled.add(key)
        try:
            outcome = _expire_group(db, key, now)
        except _BatchChanged:
            db.rollback()
            logger.info("Reservation batch changed during expiry, skipped", extra={"batch": key.label})
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to expire reservation batch", extra={"batch": key.label})
            result.errors.append(f"{key.label}: {exc}")
            continue
        if outcome is None:
            continue
        if isinstance(outcome, str):
            result.anomalies += 1
            continue
        result.expired_count += len(outcome.reservations)
        logger.info(
            "Reservation batch expired",
            extra={
                "batch": key.label,
                "student_id": outcome.student_id,
                "status": outcome.terminal.value,
                "count": len(outcome.reservations),
            },
        )
        _send_lapse_notice(db, key, outcome, result, sender=sender, now=now)

    _retry_recent_notices(db, handled, result, sender=sender, now=now)
    return result


def _retry_recent_notices(
    db: Session,
    handled: set[_GroupKey],
    result: SweepResult,
    *,
    sender: NotificationSender | None,
    now: datetime,
) -> None:
    recent = db.execute(
        select(models.Reservation)
        .where(
            models.Reservation.status.in_(tuple(_NOTICE_BY_TERMINAL)),
            models.Reservation.resolved_by == SYSTEM_ACTOR,
            models.Reservation.resolution_reason == HOLD_EXPIRED_REASON,
            models.Reservation.resolved_at >= now - EXPIRY_NOTICE_RETRY_WINDOW,
        )
        .order_by(models.Reservation.id)
    ).scalars().all()
    db.commit()
    for key, rows in _group(recent).items():
        if key in handled:
            continue
        lapsed = _Lapsed(student_id=rows[0].student_id, terminal=rows[0].status, reservations=rows)
        _send_lapse_notice(db, key, lapsed, result, sender=sender, now=now)


def run_hold_reminder_sweep(
    db: Session,
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
) -> DeliveryReport:
    """Nudge students whose e-transfer hold runs out within the next few hours."""

    now = now or _utc_now()
    rows = db.execute(
        select(models.Reservation)
        .where(
            models.Reservation.status == models.ReservationStatus.pending_etransfer,
            models.Reservation.batch_token.is_not(None),
            models.Reservation.created_at < now - HOLD_REMINDER_MIN_AGE,
            models.Reservation.hold_expires_at > now,
            models.Reservation.hold_expires_at <= now + HOLD_REMINDER_HORIZON,
        )
        .order_by(models.Reservation.id)
    ).scalars().all()
    db.commit()

    batches: dict[tuple[int, str], list[models.Reservation]] = {}
    for row in rows:
        batches.setdefault((row.student_id, row.batch_token), []).append(row)

    report = DeliveryReport()
    for (student_id, batch_token), members in batches.items():
        expires_at = min(as_utc(member.hold_expires_at) for member in members)
        try:
            report.merge(
                notification_service.notify_student_and_guardians(
                    db,
                    student_id,
                    NotificationType.etransfer_reminder,
                    batch_reference(student_id, batch_token),
                    {
                        "classes": notification_service.class_summary(members),
                        "hold_expires_at": expires_at.isoformat(),
                        "batch_token": batch_token,
                    },
                    sender=sender,
                    now=now,
                )
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to send hold reminder", extra={"batch_token": batch_token})
            report.failed += 1
    return report


def _local_date(now: datetime):
    try:
        zone = ZoneInfo(get_settings().timezone or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo(DEFAULT_TIMEZONE)
    return now.astimezone(zone).date()


def run_pending_approval_admin_reminder(
    db: Session,
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
) -> DeliveryReport:
    now = now or _utc_now()
    pending = db.scalar(
        select(func.count(models.Reservation.id)).where(
            models.Reservation.status == models.ReservationStatus.pending_approval
        )
    )
    db.commit()
    if not pending:
        return DeliveryReport()
    return notification_service.deliver(
        db,
        notification_service.admin_recipients(db),
        NotificationType.pending_approval_reminder,
        daily_reference("pending_approval_reminder", _local_date(now)),
        {"pending_count": pending, "review_url": f"{get_settings().portal_url}/admin/registrations"},
        sender=sender,
        now=now,
    )


__all__ = [
    "SweepResult",
    "run_expiry_sweep",
    "run_hold_reminder_sweep",
    "run_pending_approval_admin_reminder",
]
