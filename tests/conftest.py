import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from datetime import date, datetime, time, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tutorportal.db.session import Base, configure_sqlite_locking
from tutorportal.db import models
from tutorportal.services.notification_service import NotificationSender, SendResult

# Tuesday 15:05 in Vancouver, a day before the first Wednesday session of the term
NOW = datetime(2025, 1, 7, 23, 5, tzinfo=timezone.utc)


class RecordingSender(NotificationSender):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.failing: set[str] = set()

    def send(self, address, template_key, params):
        if address in self.failing:
            return SendResult(ok=False, error="rejected")
        self.sent.append((address, template_key, params))
        return SendResult(ok=True)

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]

    def addresses(self, template_key: str | None = None) -> list[str]:
        return [
            address
            for address, template, _ in self.sent
            if template_key is None or template == template_key
        ]


class Factory:
    def __init__(self, session) -> None:
        self.session = session
        self._emails = 0

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def profile(self, role=models.ProfileRole.student, email=None, **kwargs):
        self._emails += 1
        if email is None:
            email = f"{role.value}{self._emails}@example.com"
        kwargs.setdefault("display_name", email.split("@")[0].title())
        return self._save(models.Profile(role=role, email=email, **kwargs))

    def student(self, **kwargs):
        return self.profile(models.ProfileRole.student, **kwargs)

    def parent_of(self, student, **kwargs):
        parent = self.profile(models.ProfileRole.parent, **kwargs)
        self._save(models.GuardianLink(parent_id=parent.id, student_id=student.id))
        return parent

    def admin(self, **kwargs):
        return self.profile(models.ProfileRole.admin, **kwargs)

    def term(self, is_active=True, start=date(2025, 1, 6), end=date(2025, 3, 24), name="Winter 2025"):
        return self._save(models.Term(name=name, start_date=start, end_date=end, is_active=is_active))

    def tutoring_class(
        self,
        term,
        name="Algebra I",
        max_students=5,
        schedule_day="wed",
        start=time(15, 0),
        end=time(16, 0),
        tz="America/Vancouver",
        price=120,
    ):
        return self._save(
            models.TutoringClass(
                term_id=term.id,
                name=name,
                schedule_day=schedule_day,
                schedule_start_time=start,
                schedule_end_time=end,
                timezone=tz,
                max_students=max_students,
                price=price,
            )
        )

    def reservation(self, student, tutoring_class, status, batch_token=None, hold_expires_at=None, **kwargs):
        kwargs.setdefault(
            "payment_method",
            models.PaymentMethod.already_paid
            if status == models.ReservationStatus.pending_approval
            else models.PaymentMethod.etransfer,
        )
        kwargs.setdefault("created_at", NOW)
        return self._save(
            models.Reservation(
                student_id=student.id,
                class_id=tutoring_class.id,
                status=status,
                batch_token=batch_token,
                hold_expires_at=hold_expires_at,
                **kwargs,
            )
        )


def make_sqlite_engine(url="sqlite+pysqlite:///:memory:", **connect_args):
    connect_args.setdefault("check_same_thread", False)
    options = {"connect_args": connect_args, "future": True}
    if url.endswith(":memory:"):
        options["poolclass"] = StaticPool
    engine = create_engine(url, **options)
    configure_sqlite_locking(engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_factory():
    engine = make_sqlite_engine()
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def factory(db_session):
    return Factory(db_session)


@pytest.fixture()
def sender():
    return RecordingSender()
