from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class ReservationStatus(str, PyEnum):
    pending_etransfer = "pending_etransfer"
    etransfer_sent = "etransfer_sent"
    pending_approval = "pending_approval"
    active = "active"
    etransfer_lapsed = "etransfer_lapsed"
    dropped = "dropped"
    cancelled = "cancelled"


class PaymentMethod(str, PyEnum):
    card = "card"
    etransfer = "etransfer"
    already_paid = "already_paid"


SEAT_OCCUPYING_STATUSES = (
    ReservationStatus.active,
    ReservationStatus.pending_etransfer,
    ReservationStatus.etransfer_sent,
    ReservationStatus.pending_approval,
)

PENDING_STATUSES = (
    ReservationStatus.pending_etransfer,
    ReservationStatus.etransfer_sent,
    ReservationStatus.pending_approval,
)

_OCCUPYING_SQL = "status IN ({})".format(
    ", ".join(f"'{status.value}'" for status in SEAT_OCCUPYING_STATUSES)
)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservation_student_class_occupying",
            "student_id",
            "class_id",
            unique=True,
            postgresql_where=text(_OCCUPYING_SQL),
            sqlite_where=text(_OCCUPYING_SQL),
        ),
        Index("ix_reservation_class_status", "class_id", "status"),
        Index("ix_reservation_batch_token", "batch_token"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), index=True)
    class_id: Mapped[int] = mapped_column(ForeignKey("classes.id", ondelete="CASCADE"))
    status: Mapped[ReservationStatus] = mapped_column(Enum(ReservationStatus))
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod))
    batch_token: Mapped[str | None] = mapped_column(String(64))
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_reference: Mapped[str | None] = mapped_column(String(64), index=True)
    etransfer_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(String(64))
    resolution_reason: Mapped[str | None] = mapped_column(String(255))

    student = relationship("Profile")
    tutoring_class = relationship("TutoringClass", back_populates="reservations")
