from datetime import datetime
from pydantic import BaseModel, Field

from ..models.reservation import PaymentMethod, ReservationStatus


class ReservationCreate(BaseModel):
    class_ids: list[int] = Field(default_factory=list)
    payment_method: str
    # parents and admins reserve on behalf of a student
    student_id: int | None = None


class Reservation(BaseModel):
    id: int
    student_id: int
    class_id: int
    status: ReservationStatus
    payment_method: PaymentMethod
    batch_token: str | None = None
    hold_expires_at: datetime | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class ReservationResult(BaseModel):
    batch_token: str
    reservations: list[Reservation]
    hold_expires_at: datetime | None = None
    redirect_url: str | None = None

    class Config:
        from_attributes = True


class BatchAction(BaseModel):
    student_id: int
    batch_token: str


class BatchCancel(BatchAction):
    reason: str


class EtransferSent(BaseModel):
    batch_token: str


class BatchResult(BaseModel):
    batch_token: str
    changed_count: int
    reservations: list[Reservation]

    class Config:
        from_attributes = True


class ClassSeats(BaseModel):
    class_id: int
    remaining_seats: int
