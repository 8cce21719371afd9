"""Seat reservations for tutoring classes.

Every reserve request writes its rows under one batch token; confirmation,
cancellation and expiry then act on the whole batch. Capacity is checked in
the same transaction that inserts, with the requested class rows locked, so
two concurrent requests can never both take the last seat.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import MAX_CLASSES_PER_REQUEST
from ..db import models
from ..db.session import as_utc, atomic
from . import notification_service, payment_service, referral_service
from .notification_ledger import NotificationType, batch_reference
from .payments.gateway import BasePaymentGateway

logger = logging.getLogger(__name__)

OCCUPYING_INDEX = "uq_reservation_student_class_occupying"


class ReservationError(Exception):
    pass


class InvalidReservationRequest(ReservationError):
    pass


class InvalidTerm(ReservationError):
    pass


class BatchNotFound(ReservationError):
    pass


class CapacityExceeded(ReservationError):
    def __init__(self, class_id: int, class_name: str) -> None:
        super().__init__(f"{class_name} is full")
        self.class_id = class_id
        self.class_name = class_name


class DuplicateReservation(ReservationError):
    def __init__(self, class_id: int, class_name: str | None = None) -> None:
        label = class_name or f"class {class_id}"
        super().__init__(f"You already have a reservation for {label}.")
        self.class_id = class_id
        self.class_name = class_name


@dataclass
class ReservationResult:
    batch_token: str
    reservations: list[models.Reservation] = field(default_factory=list)
    hold_expires_at: datetime | None = None
    redirect_url: str | None = None


@dataclass
class BatchResult:
    batch_token: str
    changed_count: int
    reservations: list[models.Reservation] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _occupied_counts(db: Session, class_ids: Iterable[int]) -> dict[int, int]:
    rows = db.execute(
        select(models.Reservation.class_id, func.count(models.Reservation.id))
        .where(
            models.Reservation.class_id.in_(list(class_ids)),
            models.Reservation.status.in_(models.SEAT_OCCUPYING_STATUSES),
        )
        .group_by(models.Reservation.class_id)
    ).all()
    return {class_id: count for class_id, count in rows}


def remaining_seats(db: Session, class_id: int) -> int:
    tutoring_class = db.get(models.TutoringClass, class_id)
    if tutoring_class is None:
        raise InvalidReservationRequest("Class not found.")
    occupied = _occupied_counts(db, [class_id]).get(class_id, 0)
    return max(0, tutoring_class.max_students - occupied)


def _validate_request(db: Session, student_id: int, class_ids: list[int]) -> models.Profile:
    if not class_ids:
        raise InvalidReservationRequest("Select at least one class.")
    if len(set(class_ids)) != len(class_ids):
        raise InvalidReservationRequest("Duplicate classes are not allowed.")
    if len(class_ids) > MAX_CLASSES_PER_REQUEST:
        raise InvalidReservationRequest(
            f"You can reserve at most {MAX_CLASSES_PER_REQUEST} classes at a time."
        )
    student = db.get(models.Profile, student_id)
    if student is None or student.role != models.ProfileRole.student:
        raise InvalidReservationRequest("Reservations can only be made for a student profile.")
    return student


def _lock_classes(db: Session, class_ids: list[int]) -> list[models.TutoringClass]:
    term = db.execute(
        select(models.Term).where(models.Term.is_active.is_(True)).order_by(models.Term.id)
    ).scalars().first()
    if term is None:
        raise InvalidTerm("No term is currently open for registration.")
    # id order keeps concurrent requests from deadlocking on each other
    classes = db.execute(
        select(models.TutoringClass)
        .where(models.TutoringClass.id.in_(class_ids))
        .order_by(models.TutoringClass.id)
        .with_for_update()
    ).scalars().all()
    if len(classes) != len(class_ids) or any(item.term_id != term.id for item in classes):
        raise InvalidTerm("One or more classes are not part of the active term.")
    return list(classes)


def _check_seats(db: Session, student_id: int, classes: list[models.TutoringClass]) -> None:
    by_id = {item.id: item for item in classes}
    held = db.execute(
        select(models.Reservation.class_id)
        .where(
            models.Reservation.student_id == student_id,
            models.Reservation.class_id.in_(list(by_id)),
            models.Reservation.status.in_(models.SEAT_OCCUPYING_STATUSES),
        )
        .order_by(models.Reservation.class_id)
    ).scalars().first()
    if held is not None:
        raise DuplicateReservation(held, by_id[held].name)
    counts = _occupied_counts(db, by_id)
    for item in classes:
        if item.max_students - counts.get(item.id, 0) < 1:
            raise CapacityExceeded(item.id, item.name)


def _insert_rows(
    db: Session,
    student_id: int,
    classes: list[models.TutoringClass],
    *,
    status: models.ReservationStatus,
    method: models.PaymentMethod,
    batch_token: str,
    hold_expires_at: datetime | None,
    now: datetime,
    payment_reference: str | None = None,
) -> list[models.Reservation]:
    rows = []
    for item in classes:
        reservation = models.Reservation(
            student_id=student_id,
            class_id=item.id,
            status=status,
            payment_method=method,
            batch_token=batch_token,
            hold_expires_at=hold_expires_at,
            payment_reference=payment_reference,
            created_at=now,
            updated_at=now,
        )
        if status == models.ReservationStatus.active:
            reservation.resolved_at = now
        db.add(reservation)
        rows.append(reservation)
    db.flush()
    return rows


def _is_occupying_conflict(exc: IntegrityError) -> bool:
    constraint = getattr(getattr(exc.orig, "diag", None), "constraint_name", "")
    if constraint == OCCUPYING_INDEX:
        return True
    message = str(exc.orig)
    return "UNIQUE" in message and "reservations.student_id" in message


def _duplicate_from(
    db: Session, exc: IntegrityError, student_id: int, class_ids: list[int]
) -> DuplicateReservation:
    if not _is_occupying_conflict(exc):
        raise exc
    row = db.execute(
        select(models.Reservation.class_id, models.TutoringClass.name)
        .join(models.TutoringClass, models.TutoringClass.id == models.Reservation.class_id)
        .where(
            models.Reservation.student_id == student_id,
            models.Reservation.class_id.in_(class_ids),
            models.Reservation.status.in_(models.SEAT_OCCUPYING_STATUSES),
        )
        .order_by(models.Reservation.class_id)
    ).first()
    db.rollback()
    if row is None:
        return DuplicateReservation(sorted(class_ids)[0])
    return DuplicateReservation(row[0], row[1])


def _notify(
    db: Session,
    student_id: int,
    notification_type: NotificationType,
    reference_id: str,
    params: dict[str, Any],
    *,
    sender: notification_service.NotificationSender | None,
    now: datetime,
) -> None:
    # the reservation is already committed; a notice problem must not undo it
    try:
        notification_service.notify_student_and_guardians(
            db, student_id, notification_type, reference_id, params, sender=sender, now=now
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Failed to record reservation notice",
            extra={"student_id": student_id, "notification_type": notification_type.value},
        )


def reserve(
    db: Session,
    student_id: int,
    class_ids: list[int],
    payment_method: models.PaymentMethod | str,
    *,
    sender: notification_service.NotificationSender | None = None,
    gateway: BasePaymentGateway | None = None,
    now: datetime | None = None,
    notify: bool = True,
) -> ReservationResult:
    now = now or _utc_now()
    try:
        method = models.PaymentMethod(payment_method)
    except ValueError as exc:
        raise InvalidReservationRequest("Unsupported payment method.") from exc
    class_ids = list(class_ids or [])
    try:
        student = _validate_request(db, student_id, class_ids)
    except ReservationError:
        db.rollback()
        raise

    if method == models.PaymentMethod.card:
        return _start_card_checkout(db, student, class_ids, sender=sender, gateway=gateway, now=now)

    settings = get_settings()
    if method == models.PaymentMethod.etransfer:
        status = models.ReservationStatus.pending_etransfer
        hold_expires_at = now + timedelta(hours=settings.etransfer_hold_hours)
        notice = NotificationType.etransfer_instructions
    else:
        status = models.ReservationStatus.pending_approval
        hold_expires_at = now + timedelta(hours=settings.approval_window_hours)
        notice = NotificationType.pending_approval_received
    batch_token = str(uuid.uuid4())

    try:
        with atomic(db):
            classes = _lock_classes(db, class_ids)
            _check_seats(db, student.id, classes)
            reservations = _insert_rows(
                db,
                student.id,
                classes,
                status=status,
                method=method,
                batch_token=batch_token,
                hold_expires_at=hold_expires_at,
                now=now,
            )
    except IntegrityError as exc:
        db.rollback()
        raise _duplicate_from(db, exc, student.id, class_ids) from exc
    except ReservationError:
        db.rollback()
        raise
    db.commit()
    logger.info(
        "Reservation batch created",
        extra={
            "student_id": student.id,
            "batch_token": batch_token,
            "status": status.value,
            "class_ids": [item.id for item in classes],
        },
    )

    if notify:
        total = sum((Decimal(str(item.price or 0)) for item in classes), Decimal("0"))
        _notify(
            db,
            student.id,
            notice,
            batch_reference(student.id, batch_token),
            {
                "student_name": student.display_name,
                "classes": notification_service.class_summary(reservations),
                "total_amount": str(total),
                "hold_expires_at": hold_expires_at.isoformat(),
                "batch_token": batch_token,
                "etransfer_sent_url": f"{settings.portal_url}/register/etransfer-sent?token={batch_token}",
            },
            sender=sender,
            now=now,
        )
    return ReservationResult(
        batch_token=batch_token,
        reservations=reservations,
        hold_expires_at=hold_expires_at,
    )


def _start_card_checkout(
    db: Session,
    student: models.Profile,
    class_ids: list[int],
    *,
    sender: notification_service.NotificationSender | None,
    gateway: BasePaymentGateway | None,
    now: datetime,
) -> ReservationResult:
    # nothing is held while the student pays; seats are re-checked on success
    try:
        with atomic(db):
            classes = _lock_classes(db, class_ids)
            _check_seats(db, student.id, classes)
    except ReservationError:
        db.rollback()
        raise
    db.commit()

    payment, response = payment_service.start_checkout(db, student, classes, gateway=gateway)
    if payment_service.status_from_gateway(response.get("status")) != models.PaymentStatus.paid:
        return ReservationResult(batch_token=payment.order_id, redirect_url=payment.confirmation_url)

    payment_service.apply_payment(db, payment, models.PaymentStatus.paid, now=now)
    result = complete_checkout(db, payment.order_id, sender=sender, now=now)
    return ReservationResult(
        batch_token=result.batch_token,
        reservations=result.reservations,
        redirect_url=response.get("redirect_url"),
    )


def _payment_rows(db: Session, order_id: str) -> list[models.Reservation]:
    return list(
        db.execute(
            select(models.Reservation)
            .where(models.Reservation.payment_reference == order_id)
            .order_by(models.Reservation.id)
        ).scalars()
    )


def _record_unseated(db: Session, payment: models.Payment, exc: ReservationError) -> None:
    logger.error(
        "Paid checkout could not be seated, refund required",
        extra={"order_id": payment.order_id, "student_id": payment.student_id, "reason": str(exc)},
    )
    db.add(
        models.AuditLog(
            actor_type=models.ActorType.system,
            action="checkout_unseated",
            subject=payment.order_id,
            payload={
                "student_id": payment.student_id,
                "class_ids": payment.class_ids,
                "amount": str(payment.amount),
                "reason": str(exc),
            },
        )
    )
    db.commit()


def complete_checkout(
    db: Session,
    order_id: str,
    *,
    sender: notification_service.NotificationSender | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """Seat a paid card checkout. Calling it again for the same order is a no-op."""

    now = now or _utc_now()
    payment = payment_service.get_payment_by_order(db, order_id)
    if payment is None:
        db.rollback()
        raise BatchNotFound("Unknown checkout.")
    if payment.status != models.PaymentStatus.paid:
        db.rollback()
        raise InvalidReservationRequest("Checkout has not been paid.")
    class_ids = sorted(payment.class_ids or [])

    created: list[models.Reservation] = []
    try:
        with atomic(db):
            classes = _lock_classes(db, class_ids)
            existing = _payment_rows(db, order_id)
            if not existing:
                _check_seats(db, payment.student_id, classes)
                created = _insert_rows(
                    db,
                    payment.student_id,
                    classes,
                    status=models.ReservationStatus.active,
                    method=models.PaymentMethod.card,
                    batch_token=order_id,
                    hold_expires_at=None,
                    now=now,
                    payment_reference=order_id,
                )
    except IntegrityError as exc:
        db.rollback()
        existing = _payment_rows(db, order_id)
        db.commit()
        if existing:
            return BatchResult(batch_token=order_id, changed_count=0, reservations=existing)
        duplicate = _duplicate_from(db, exc, payment.student_id, class_ids)
        _record_unseated(db, payment, duplicate)
        raise duplicate from exc
    except ReservationError as exc:
        db.rollback()
        _record_unseated(db, payment, exc)
        raise
    db.commit()
    if existing:
        return BatchResult(batch_token=order_id, changed_count=0, reservations=existing)

    logger.info(
        "Card checkout seated",
        extra={"order_id": order_id, "student_id": payment.student_id, "class_ids": class_ids},
    )
    _after_confirmation(db, payment.student_id, order_id, created, sender=sender, now=now)
    return BatchResult(batch_token=order_id, changed_count=len(created), reservations=created)


def _batch_rows(
    db: Session,
    batch_token: str,
    *,
    student_id: int | None = None,
    lock: bool = False,
) -> list[models.Reservation]:
    stmt = select(models.Reservation).where(models.Reservation.batch_token == batch_token)
    if student_id is not None:
        stmt = stmt.where(models.Reservation.student_id == student_id)
    stmt = stmt.order_by(models.Reservation.id)
    if lock:
        stmt = stmt.with_for_update()
    return list(db.execute(stmt.execution_options(populate_existing=True)).scalars())


def get_batch(db: Session, student_id: int, batch_token: str) -> list[models.Reservation]:
    rows = _batch_rows(db, batch_token, student_id=student_id)
    if not rows:
        raise BatchNotFound("Reservation batch not found.")
    return rows


def _had_other_active(db: Session, student_id: int, batch_token: str) -> bool:
    found = db.scalar(
        select(models.Reservation.id)
        .where(
            models.Reservation.student_id == student_id,
            models.Reservation.status == models.ReservationStatus.active,
            or_(
                models.Reservation.batch_token.is_(None),
                models.Reservation.batch_token != batch_token,
            ),
        )
        .limit(1)
    )
    return found is not None


def _after_confirmation(
    db: Session,
    student_id: int,
    batch_token: str,
    reservations: list[models.Reservation],
    *,
    sender: notification_service.NotificationSender | None,
    now: datetime,
) -> None:
    try:
        if not _had_other_active(db, student_id, batch_token):
            referral_service.convert_first_referral(db, [student_id], now=now)
        else:
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Referral conversion failed", extra={"student_id": student_id})
    _notify(
        db,
        student_id,
        NotificationType.enrollment_confirmed,
        batch_reference(student_id, batch_token),
        {"classes": notification_service.class_summary(reservations), "batch_token": batch_token},
        sender=sender,
        now=now,
    )


def confirm_batch(
    db: Session,
    student_id: int,
    batch_token: str,
    *,
    actor: str = "admin",
    sender: notification_service.NotificationSender | None = None,
    now: datetime | None = None,
) -> BatchResult:
    now = now or _utc_now()
    rows = _batch_rows(db, batch_token, student_id=student_id, lock=True)
    if not rows:
        db.rollback()
        raise BatchNotFound("Reservation batch not found.")
    pending_ids = [row.id for row in rows if row.status in models.PENDING_STATUSES]
    if not pending_ids:
        db.commit()
        if any(row.status == models.ReservationStatus.active for row in rows):
            return BatchResult(batch_token=batch_token, changed_count=0, reservations=rows)
        raise BatchNotFound("Reservation batch is no longer pending.")

    result = db.execute(
        update(models.Reservation)
        .where(
            models.Reservation.id.in_(pending_ids),
            models.Reservation.status.in_(models.PENDING_STATUSES),
        )
        .values(
            status=models.ReservationStatus.active,
            updated_at=now,
            resolved_at=now,
            resolved_by=actor,
        )
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount
    db.commit()
    rows = _batch_rows(db, batch_token, student_id=student_id)
    db.commit()
    logger.info(
        "Reservation batch confirmed",
        extra={"student_id": student_id, "batch_token": batch_token, "changed": changed},
    )
    if changed:
        _after_confirmation(db, student_id, batch_token, rows, sender=sender, now=now)
    return BatchResult(batch_token=batch_token, changed_count=changed, reservations=rows)


def cancel_batch(
    db: Session,
    student_id: int,
    batch_token: str,
    reason: str,
    *,
    actor: str = "admin",
    actor_id: int | None = None,
    sender: notification_service.NotificationSender | None = None,
    now: datetime | None = None,
) -> BatchResult:
    now = now or _utc_now()
    reason = (reason or "").strip()
    if not reason:
        raise InvalidReservationRequest("A cancellation reason is required.")
    rows = _batch_rows(db, batch_token, student_id=student_id, lock=True)
    if not rows:
        db.rollback()
        raise BatchNotFound("Reservation batch not found.")
    pending_ids = [row.id for row in rows if row.status in models.PENDING_STATUSES]
    if not pending_ids:
        db.commit()
        if all(row.status == models.ReservationStatus.cancelled for row in rows):
            return BatchResult(batch_token=batch_token, changed_count=0, reservations=rows)
        raise BatchNotFound("Reservation batch has no pending reservations.")

    result = db.execute(
        update(models.Reservation)
        .where(
            models.Reservation.id.in_(pending_ids),
            models.Reservation.status.in_(models.PENDING_STATUSES),
        )
        .values(
            status=models.ReservationStatus.cancelled,
            updated_at=now,
            resolved_at=now,
            resolved_by=actor,
            resolution_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount
    db.add(
        models.AuditLog(
            actor_type=models.ActorType.admin,
            actor_id=actor_id,
            action="reservation_batch_cancelled",
            subject=batch_token,
            payload={"student_id": student_id, "reason": reason, "reservation_ids": pending_ids},
            created_at=now,
        )
    )
    db.commit()
    rows = _batch_rows(db, batch_token, student_id=student_id)
    db.commit()
    logger.info(
        "Reservation batch cancelled",
        extra={"student_id": student_id, "batch_token": batch_token, "changed": changed},
    )
    if changed:
        _notify(
            db,
            student_id,
            NotificationType.reservation_cancelled,
            batch_reference(student_id, batch_token),
            {"classes": notification_service.class_summary(rows), "reason": reason, "batch_token": batch_token},
            sender=sender,
            now=now,
        )
    return BatchResult(batch_token=batch_token, changed_count=changed, reservations=rows)


def mark_etransfer_sent(
    db: Session,
    batch_token: str,
    *,
    student_id: int | None = None,
    sender: notification_service.NotificationSender | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """Record that the student sent the e-transfer; the batch then waits for an admin."""

    now = now or _utc_now()
    rows = _batch_rows(db, batch_token, student_id=student_id, lock=True)
    if rows and all(row.status == models.ReservationStatus.etransfer_sent for row in rows):
        db.commit()
        return BatchResult(batch_token=batch_token, changed_count=0, reservations=rows)
    eligible = [
        row.id
        for row in rows
        if row.status == models.ReservationStatus.pending_etransfer
        and (row.hold_expires_at is None or as_utc(row.hold_expires_at) > now)
    ]
    if not eligible:
        db.rollback()
        raise BatchNotFound("Invalid or expired token.")

    result = db.execute(
        update(models.Reservation)
        .where(
            models.Reservation.id.in_(eligible),
            models.Reservation.status == models.ReservationStatus.pending_etransfer,
        )
        .values(
            status=models.ReservationStatus.etransfer_sent,
            etransfer_sent_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount
    db.commit()
    rows = _batch_rows(db, batch_token, student_id=student_id)
    owner_id = rows[0].student_id
    student = db.get(models.Profile, owner_id)
    db.commit()
    logger.info("E-transfer marked as sent", extra={"batch_token": batch_token, "changed": changed})

    try:
        notification_service.deliver(
            db,
            notification_service.admin_recipients(db),
            NotificationType.etransfer_sent_admin_notice,
            f"etransfer_sent:{batch_token}",
            {
                "student_id": owner_id,
                "student_name": student.display_name if student else None,
                "classes": notification_service.class_summary(rows),
                "batch_token": batch_token,
            },
            sender=sender,
            now=now,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record admin e-transfer notice", extra={"batch_token": batch_token})
    return BatchResult(batch_token=batch_token, changed_count=changed, reservations=rows)


__all__ = [
    "ReservationError",
    "InvalidReservationRequest",
    "InvalidTerm",
    "BatchNotFound",
    "CapacityExceeded",
    "DuplicateReservation",
    "ReservationResult",
    "BatchResult",
    "remaining_seats",
    "reserve",
    "complete_checkout",
    "confirm_batch",
    "cancel_batch",
    "mark_etransfer_sent",
    "get_batch",
]
