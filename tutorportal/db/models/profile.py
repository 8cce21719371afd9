from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import JSON, DateTime, Enum, Integer, String, UniqueConstraint, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class ProfileRole(str, PyEnum):
    student = "student"
    parent = "parent"
    coach = "coach"
    admin = "admin"


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255))
    role: Mapped[ProfileRole] = mapped_column(Enum(ProfileRole), default=ProfileRole.student)
    timezone: Mapped[str] = mapped_column(String(64), default="America/Vancouver")
    locale: Mapped[str] = mapped_column(String(8), default="en")
    notification_preferences: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class GuardianLink(Base):
    __tablename__ = "guardian_links"
    __table_args__ = (
        UniqueConstraint("parent_id", "student_id", name="uq_guardian_link_parent_student"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_id: Mapped[int] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), index=True)

    parent = relationship("Profile", foreign_keys=[parent_id])
    student = relationship("Profile", foreign_keys=[student_id])
