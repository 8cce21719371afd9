from .reservation import (
    ReservationCreate,
    Reservation,
    ReservationResult,
    BatchAction,
    BatchCancel,
    EtransferSent,
    BatchResult,
    ClassSeats,
)
from .referral import ReferralCredit
from .sweep import ExpirySweep, DeliverySummary
