from .profile import Profile, ProfileRole, GuardianLink
from .term import Term
from .tutoring_class import TutoringClass
from .reservation import (
    Reservation,
    ReservationStatus,
    PaymentMethod,
    SEAT_OCCUPYING_STATUSES,
    PENDING_STATUSES,
)
from .notification_record import NotificationRecord
from .referral import Referral, ReferralStatus, ReferralCredit, CONVERTIBLE_REFERRAL_STATUSES
from .payment import Payment, PaymentStatus, PaymentProvider
from .audit_log import AuditLog, ActorType
