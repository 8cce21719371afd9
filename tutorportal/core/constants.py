"""Common application-wide constants."""

from datetime import timedelta

# Upper bound on classes reserved in a single request
MAX_CLASSES_PER_REQUEST = 8

# Recurring sessions are looked up this many calendar days ahead; reminder
# windows never exceed 24 hours
LOOKAHEAD_DAYS = 3

# Lead-time buckets for class reminders, in minutes
ONE_HOUR_WINDOW = (0, 60)
ONE_DAY_WINDOW = (23 * 60, 24 * 60)

# Lapse notices that failed to deliver are retried for this long
EXPIRY_NOTICE_RETRY_WINDOW = timedelta(hours=24)

# E-transfer hold reminder: batch must be this old and expire within the horizon
HOLD_REMINDER_MIN_AGE = timedelta(hours=11)
HOLD_REMINDER_HORIZON = timedelta(hours=12)

# Metadata for system-driven reservation transitions
HOLD_EXPIRED_REASON = "hold_expired"
SYSTEM_ACTOR = "system"

DEFAULT_TIMEZONE = "America/Vancouver"


__all__ = [
    "MAX_CLASSES_PER_REQUEST",
    "LOOKAHEAD_DAYS",
    "ONE_HOUR_WINDOW",
    "ONE_DAY_WINDOW",
    "EXPIRY_NOTICE_RETRY_WINDOW",
    "HOLD_REMINDER_MIN_AGE",
    "HOLD_REMINDER_HORIZON",
    "HOLD_EXPIRED_REASON",
    "SYSTEM_ACTOR",
    "DEFAULT_TIMEZONE",
]
