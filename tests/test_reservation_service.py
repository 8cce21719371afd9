from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import func, select

from conftest import NOW
from tutorportal.config import get_settings
from tutorportal.db import models
from tutorportal.services import reservation_service
from tutorportal.services.payments.gateway import BasePaymentGateway
from tutorportal.services.payments.stub import StubGateway

Status = models.ReservationStatus


class PendingGateway(BasePaymentGateway):
    """Hosted checkout that has not been paid yet."""

    def __init__(self) -> None:
        super().__init__(get_settings())
        self.charges: list[dict[str, Any]] = []

    def create_charge(self, order_id, amount, currency, line_items, success_url, cancel_url, metadata):
        self.charges.append({"order_id": order_id, "amount": amount, "line_items": line_items})
        return {"order_id": order_id, "status": "pending", "redirect_url": f"https://pay.example/{order_id}"}

    def verify_webhook(self, body, headers):
        return None

    def parse_webhook(self, data):
        return data


def student_rows(session, student):
    return session.execute(
        select(models.Reservation)
        .where(models.Reservation.student_id == student.id)
        .order_by(models.Reservation.id)
        .execution_options(populate_existing=True)
    ).scalars().all()


def test_etransfer_reservation_holds_seats_under_one_batch(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term, name="Algebra I")
    physics = factory.tutoring_class(term, name="Physics 11")
    student = factory.student()
    parent = factory.parent_of(student)

    result = reservation_service.reserve(
        db_session, student.id, [algebra.id, physics.id], "etransfer", sender=sender, now=NOW
    )

    assert len(result.reservations) == 2
    assert {row.status for row in result.reservations} == {Status.pending_etransfer}
    assert {row.batch_token for row in result.reservations} == {result.batch_token}
    assert result.hold_expires_at == NOW + timedelta(hours=24)
    assert reservation_service.remaining_seats(db_session, algebra.id) == 4
    assert sorted(sender.addresses("etransfer_instructions")) == sorted([student.email, parent.email])
    record = db_session.execute(
        select(models.NotificationRecord).where(models.NotificationRecord.recipient_id == student.id)
    ).scalar_one()
    assert record.reference_id == f"{student.id}_{result.batch_token}"


def test_already_paid_reservation_waits_for_approval(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()

    result = reservation_service.reserve(
        db_session, student.id, [algebra.id], models.PaymentMethod.already_paid, sender=sender, now=NOW
    )

    assert result.reservations[0].status == Status.pending_approval
    assert result.hold_expires_at == NOW + timedelta(hours=72)
    assert sender.templates() == ["pending_approval_received"]


@pytest.mark.parametrize(
    "class_ids, message",
    [
        ([], "Select at least one class."),
        ([1, 1], "Duplicate classes are not allowed."),
        (list(range(1, 10)), "You can reserve at most 8 classes at a time."),
    ],
)
def test_malformed_requests_are_rejected(db_session, factory, class_ids, message):
    student = factory.student()

    with pytest.raises(reservation_service.InvalidReservationRequest) as exc_info:
        reservation_service.reserve(db_session, student.id, class_ids, "etransfer", now=NOW)

    assert str(exc_info.value) == message
    assert student_rows(db_session, student) == []


def test_only_students_hold_reservations(db_session, factory):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    parent = factory.profile(models.ProfileRole.parent)

    with pytest.raises(reservation_service.InvalidReservationRequest):
        reservation_service.reserve(db_session, parent.id, [algebra.id], "etransfer", now=NOW)
    with pytest.raises(reservation_service.InvalidReservationRequest):
        reservation_service.reserve(db_session, parent.id, [algebra.id], "bitcoin", now=NOW)


def test_classes_must_belong_to_active_term(db_session, factory):
    active = factory.term()
    past = factory.term(is_active=False, name="Fall 2024")
    current_class = factory.tutoring_class(active)
    old_class = factory.tutoring_class(past, name="Old Algebra")
    student = factory.student()

    with pytest.raises(reservation_service.InvalidTerm):
        reservation_service.reserve(db_session, student.id, [current_class.id, old_class.id], "etransfer", now=NOW)
    with pytest.raises(reservation_service.InvalidTerm):
        reservation_service.reserve(db_session, student.id, [current_class.id, 9999], "etransfer", now=NOW)
    assert student_rows(db_session, student) == []


def test_no_active_term_rejects_everything(db_session, factory):
    term = factory.term(is_active=False)
    algebra = factory.tutoring_class(term)
    student = factory.student()

    with pytest.raises(reservation_service.InvalidTerm):
        reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", now=NOW)


def test_second_reservation_for_same_class_is_duplicate(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term, name="Algebra I")
    physics = factory.tutoring_class(term, name="Physics 11")
    student = factory.student()
    reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)

    with pytest.raises(reservation_service.DuplicateReservation) as exc_info:
        reservation_service.reserve(
            db_session, student.id, [physics.id, algebra.id], "already_paid", sender=sender, now=NOW
        )

    assert exc_info.value.class_id == algebra.id
    assert "Algebra I" in str(exc_info.value)
    assert len(student_rows(db_session, student)) == 1


def test_unique_index_conflict_maps_to_duplicate(db_session, factory, monkeypatch):
    term = factory.term()
    algebra = factory.tutoring_class(term, name="Algebra I")
    student = factory.student()
    reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", notify=False, now=NOW)
    # a concurrent request that got past the application check
    monkeypatch.setattr(reservation_service, "_check_seats", lambda *args, **kwargs: None)

    with pytest.raises(reservation_service.DuplicateReservation) as exc_info:
        reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", notify=False, now=NOW)

    assert exc_info.value.class_id == algebra.id
    assert len(student_rows(db_session, student)) == 1


def test_full_class_fails_whole_request(db_session, factory):
    term = factory.term()
    algebra = factory.tutoring_class(term, name="Algebra I")
    chemistry = factory.tutoring_class(term, name="Chemistry 12", max_students=1)
    physics = factory.tutoring_class(term, name="Physics 11")
    other = factory.student()
    factory.reservation(other, chemistry, Status.active, batch_token="paid-batch")
    student = factory.student()

    with pytest.raises(reservation_service.CapacityExceeded) as exc_info:
        reservation_service.reserve(
            db_session, student.id, [algebra.id, chemistry.id, physics.id], "etransfer", now=NOW
        )

    assert str(exc_info.value) == "Chemistry 12 is full"
    assert exc_info.value.class_id == chemistry.id
    assert student_rows(db_session, student) == []
    assert reservation_service.remaining_seats(db_session, algebra.id) == 5


def test_lapsed_reservation_frees_the_seat(db_session, factory):
    term = factory.term()
    chemistry = factory.tutoring_class(term, name="Chemistry 12", max_students=1)
    student = factory.student()
    factory.reservation(student, chemistry, Status.etransfer_lapsed, batch_token="old")

    result = reservation_service.reserve(db_session, student.id, [chemistry.id], "etransfer", notify=False, now=NOW)

    assert result.reservations[0].status == Status.pending_etransfer
    assert reservation_service.remaining_seats(db_session, chemistry.id) == 0


def test_failed_notice_keeps_reservation(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    parent = factory.parent_of(student)
    sender.failing.add(student.email)

    result = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)

    assert [row.id for row in student_rows(db_session, student)] == [result.reservations[0].id]
    assert sender.addresses() == [parent.email]
    recorded = db_session.scalars(select(models.NotificationRecord.recipient_id)).all()
    assert recorded == [parent.id]


def test_confirm_batch_activates_pending_rows_once(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    physics = factory.tutoring_class(term, name="Physics 11")
    student = factory.student()
    reserved = reservation_service.reserve(
        db_session, student.id, [algebra.id, physics.id], "etransfer", sender=sender, now=NOW
    )

    first = reservation_service.confirm_batch(
        db_session, student.id, reserved.batch_token, actor="admin:1", sender=sender, now=NOW
    )
    second = reservation_service.confirm_batch(
        db_session, student.id, reserved.batch_token, actor="admin:1", sender=sender, now=NOW
    )

    assert first.changed_count == 2
    assert second.changed_count == 0
    rows = student_rows(db_session, student)
    assert {row.status for row in rows} == {Status.active}
    assert {row.resolved_by for row in rows} == {"admin:1"}
    assert sender.templates().count("enrollment_confirmed") == 1


def test_confirmed_sent_etransfer_batch(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    reserved = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)
    reservation_service.mark_etransfer_sent(db_session, reserved.batch_token, sender=sender, now=NOW)

    result = reservation_service.confirm_batch(db_session, student.id, reserved.batch_token, now=NOW)

    assert result.changed_count == 1
    assert result.reservations[0].status == Status.active


def test_confirm_unknown_or_lapsed_batch(db_session, factory):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    factory.reservation(student, algebra, Status.etransfer_lapsed, batch_token="gone")

    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.confirm_batch(db_session, student.id, "missing", now=NOW)
    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.confirm_batch(db_session, student.id, "gone", now=NOW)

    other = factory.student()
    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.confirm_batch(db_session, other.id, "gone", now=NOW)


def test_first_confirmation_converts_referral_once(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    physics = factory.tutoring_class(term, name="Physics 11")
    referrer = factory.student()
    student = factory.student()
    referral = models.Referral(
        referrer_id=referrer.id, referred_student_id=student.id, status=models.ReferralStatus.registered
    )
    db_session.add(referral)
    db_session.commit()

    first = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)
    reservation_service.confirm_batch(db_session, student.id, first.batch_token, sender=sender, now=NOW)
    db_session.refresh(referral)
    assert referral.status == models.ReferralStatus.converted
    assert float(referral.credit_amount) == 50.0
    converted_at = referral.converted_at

    second = reservation_service.reserve(db_session, student.id, [physics.id], "etransfer", sender=sender, now=NOW)
    reservation_service.confirm_batch(
        db_session, student.id, second.batch_token, sender=sender, now=NOW + timedelta(days=1)
    )
    db_session.refresh(referral)
    assert referral.status == models.ReferralStatus.converted
    assert referral.converted_at == converted_at


def test_referral_not_converted_for_returning_student(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    physics = factory.tutoring_class(term, name="Physics 11")
    referrer = factory.student()
    student = factory.student()
    factory.reservation(student, physics, Status.active, batch_token="earlier")
    referral = models.Referral(referrer_id=referrer.id, referred_student_id=student.id)
    db_session.add(referral)
    db_session.commit()

    reserved = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)
    reservation_service.confirm_batch(db_session, student.id, reserved.batch_token, sender=sender, now=NOW)

    db_session.refresh(referral)
    assert referral.status == models.ReferralStatus.pending


def test_cancel_batch_records_reason(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    reserved = reservation_service.reserve(db_session, student.id, [algebra.id], "already_paid", sender=sender, now=NOW)

    with pytest.raises(reservation_service.InvalidReservationRequest):
        reservation_service.cancel_batch(db_session, student.id, reserved.batch_token, "  ", now=NOW)

    result = reservation_service.cancel_batch(
        db_session, student.id, reserved.batch_token, "Payment not received", actor="admin:3", actor_id=3,
        sender=sender, now=NOW,
    )
    repeat = reservation_service.cancel_batch(
        db_session, student.id, reserved.batch_token, "Payment not received", sender=sender, now=NOW
    )

    assert result.changed_count == 1
    assert repeat.changed_count == 0
    row = student_rows(db_session, student)[0]
    assert row.status == Status.cancelled
    assert row.resolution_reason == "Payment not received"
    assert row.resolved_by == "admin:3"
    audit = db_session.execute(
        select(models.AuditLog).where(models.AuditLog.action == "reservation_batch_cancelled")
    ).scalar_one()
    assert audit.subject == reserved.batch_token
    assert audit.payload["reason"] == "Payment not received"
    assert sender.templates().count("reservation_cancelled") == 1
    assert reservation_service.remaining_seats(db_session, algebra.id) == 5


def test_cancel_active_batch_is_rejected(db_session, factory):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    factory.reservation(student, algebra, Status.active, batch_token="done")

    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.cancel_batch(db_session, student.id, "done", "changed my mind", now=NOW)


def test_mark_etransfer_sent_notifies_admins(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    admin = factory.admin()
    reserved = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)

    result = reservation_service.mark_etransfer_sent(
        db_session, reserved.batch_token, student_id=student.id, sender=sender, now=NOW + timedelta(hours=1)
    )
    again = reservation_service.mark_etransfer_sent(db_session, reserved.batch_token, sender=sender, now=NOW)

    assert result.changed_count == 1
    assert again.changed_count == 0
    row = student_rows(db_session, student)[0]
    assert row.status == Status.etransfer_sent
    assert row.etransfer_sent_at is not None
    assert sender.addresses("etransfer_sent_admin_notice") == [admin.email]


def test_mark_etransfer_sent_after_expiry_is_rejected(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    reserved = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", sender=sender, now=NOW)

    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.mark_etransfer_sent(db_session, reserved.batch_token, now=NOW + timedelta(hours=25))
    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.mark_etransfer_sent(db_session, "no-such-token", now=NOW)


def test_card_reservation_with_stub_gateway_is_active(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term, price=150)
    physics = factory.tutoring_class(term, name="Physics 11", price=100)
    student = factory.student()

    result = reservation_service.reserve(
        db_session,
        student.id,
        [algebra.id, physics.id],
        "card",
        sender=sender,
        gateway=StubGateway(get_settings()),
        now=NOW,
    )

    payment = db_session.execute(select(models.Payment)).scalar_one()
    assert payment.status == models.PaymentStatus.paid
    assert float(payment.amount) == 250.0
    assert result.batch_token == payment.order_id
    assert {row.status for row in result.reservations} == {Status.active}
    assert {row.payment_reference for row in result.reservations} == {payment.order_id}
    assert sender.templates() == ["enrollment_confirmed"]


def test_card_checkout_inserts_nothing_until_paid(db_session, factory, sender):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    gateway = PendingGateway()

    result = reservation_service.reserve(
        db_session, student.id, [algebra.id], "card", sender=sender, gateway=gateway, now=NOW
    )

    assert result.reservations == []
    assert result.redirect_url == f"https://pay.example/{result.batch_token}"
    assert student_rows(db_session, student) == []
    with pytest.raises(reservation_service.InvalidReservationRequest):
        reservation_service.complete_checkout(db_session, result.batch_token, sender=sender, now=NOW)

    payment = db_session.execute(select(models.Payment)).scalar_one()
    payment.status = models.PaymentStatus.paid
    db_session.commit()
    seated = reservation_service.complete_checkout(db_session, result.batch_token, sender=sender, now=NOW)
    repeat = reservation_service.complete_checkout(db_session, result.batch_token, sender=sender, now=NOW)

    assert seated.changed_count == 1
    assert repeat.changed_count == 0
    assert [row.id for row in repeat.reservations] == [row.id for row in seated.reservations]
    assert sender.templates() == ["enrollment_confirmed"]


def test_paid_checkout_that_lost_its_seat_is_flagged(db_session, factory, sender):
    term = factory.term()
    chemistry = factory.tutoring_class(term, name="Chemistry 12", max_students=1)
    student = factory.student()
    result = reservation_service.reserve(
        db_session, student.id, [chemistry.id], "card", sender=sender, gateway=PendingGateway(), now=NOW
    )
    factory.reservation(factory.student(), chemistry, Status.pending_etransfer, batch_token="fast")
    payment = db_session.execute(select(models.Payment)).scalar_one()
    payment.status = models.PaymentStatus.paid
    db_session.commit()

    with pytest.raises(reservation_service.CapacityExceeded):
        reservation_service.complete_checkout(db_session, result.batch_token, sender=sender, now=NOW)

    db_session.refresh(payment)
    assert payment.status == models.PaymentStatus.paid
    flagged = db_session.scalar(
        select(func.count(models.AuditLog.id)).where(
            models.AuditLog.action == "checkout_unseated",
            models.AuditLog.subject == result.batch_token,
        )
    )
    assert flagged == 1
    assert student_rows(db_session, student) == []


def test_get_batch(db_session, factory):
    term = factory.term()
    algebra = factory.tutoring_class(term)
    student = factory.student()
    reserved = reservation_service.reserve(db_session, student.id, [algebra.id], "etransfer", notify=False, now=NOW)

    assert [row.id for row in reservation_service.get_batch(db_session, student.id, reserved.batch_token)] == [
        reserved.reservations[0].id
    ]
    with pytest.raises(reservation_service.BatchNotFound):
        reservation_service.get_batch(db_session, student.id, "nope")
