import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..db.session import SessionLocal
from ..services import expiry_service, reminder_service

logger = logging.getLogger(__name__)


def expire_reservations() -> None:
    with SessionLocal() as db:
        result = expiry_service.run_expiry_sweep(db)
    logger.info(
        "Expiry sweep finished",
        extra={
            "expired": result.expired_count,
            "notifications_sent": result.notifications_sent,
            "anomalies": result.anomalies,
            "errors": len(result.errors),
        },
    )


def send_class_reminders() -> None:
    with SessionLocal() as db:
        reminder_service.run_reminder_sweep(db)


def send_hold_reminders() -> None:
    with SessionLocal() as db:
        report = expiry_service.run_hold_reminder_sweep(db)
    logger.info("Hold reminders sent", extra={"sent": report.sent, "failed": report.failed})


def remind_admins_of_pending_approvals() -> None:
    with SessionLocal() as db:
        expiry_service.run_pending_approval_admin_reminder(db)


def get_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    # a run still going when the next one is due is skipped, not stacked
    scheduler.add_job(expire_reservations, "interval", minutes=15, max_instances=1, coalesce=True)
    scheduler.add_job(send_class_reminders, "interval", minutes=10, max_instances=1, coalesce=True)
    scheduler.add_job(send_hold_reminders, "interval", minutes=30, max_instances=1, coalesce=True)
    scheduler.add_job(remind_admins_of_pending_approvals, "interval", hours=1, max_instances=1, coalesce=True)
    return scheduler
