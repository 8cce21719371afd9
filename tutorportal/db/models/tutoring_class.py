from datetime import time
from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class TutoringClass(Base):
    __tablename__ = "classes"
    __table_args__ = (
        CheckConstraint("max_students > 0", name="ck_class_max_students_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    term_id: Mapped[int] = mapped_column(ForeignKey("terms.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    schedule_day: Mapped[str] = mapped_column(String(3), nullable=False)
    schedule_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    schedule_end_time: Mapped[time] = mapped_column(Time, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="America/Vancouver")
    max_students: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    zoom_link: Mapped[str | None] = mapped_column(String(512))

    term = relationship("Term", back_populates="classes")
    reservations = relationship("Reservation", back_populates="tutoring_class")
