from . import (
    reservations,
    admin,
    payments,
    cron,
    misc,
)

__all__ = [
    "reservations",
    "admin",
    "payments",
    "cron",
    "misc",
]
