from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from ...api import deps
from ...db.session import get_db
from ...db import schemas
from ...services import expiry_service, reminder_service

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(deps.require_cron_secret)])


@router.post("/expiry", response_model=schemas.ExpirySweep)
def expiry_sweep(db: Session = Depends(get_db)):
    return expiry_service.run_expiry_sweep(db)


@router.post("/hold-reminders", response_model=schemas.DeliverySummary)
def hold_reminders(db: Session = Depends(get_db)):
    return expiry_service.run_hold_reminder_sweep(db)


@router.post("/class-reminders", response_model=schemas.DeliverySummary)
def class_reminders(db: Session = Depends(get_db)):
    return reminder_service.run_reminder_sweep(db)


@router.post("/approval-reminders", response_model=schemas.DeliverySummary)
def approval_reminders(db: Session = Depends(get_db)):
    return expiry_service.run_pending_approval_admin_reminder(db)
