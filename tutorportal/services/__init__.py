from . import (
    notification_ledger,
    notification_service,
    payment_service,
    referral_service,
    reservation_service,
    expiry_service,
    reminder_service,
)
__all__ = [
    "notification_ledger",
    "notification_service",
    "payment_service",
    "referral_service",
    "reservation_service",
    "expiry_service",
    "reminder_service",
]
