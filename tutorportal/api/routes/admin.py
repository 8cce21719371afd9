from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from ...api import deps
from ...db.session import get_db
from ...db import schemas
from ...services import referral_service, reservation_service

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/batches/confirm", response_model=schemas.BatchResult)
def confirm_batch(
    payload: schemas.BatchAction,
    db: Session = Depends(get_db),
    admin: deps.Caller = Depends(deps.require_roles("admin")),
):
    try:
        result = reservation_service.confirm_batch(
            db, payload.student_id, payload.batch_token, actor=f"admin:{admin.id}"
        )
    except reservation_service.ReservationError as exc:
        raise deps.reservation_http_error(exc) from exc
    return schemas.BatchResult.model_validate(result, from_attributes=True)


@router.post("/batches/cancel", response_model=schemas.BatchResult)
def cancel_batch(
    payload: schemas.BatchCancel,
    db: Session = Depends(get_db),
    admin: deps.Caller = Depends(deps.require_roles("admin")),
):
    try:
        result = reservation_service.cancel_batch(
            db,
            payload.student_id,
            payload.batch_token,
            payload.reason,
            actor=f"admin:{admin.id}",
            actor_id=admin.id,
        )
    except reservation_service.ReservationError as exc:
        raise deps.reservation_http_error(exc) from exc
    return schemas.BatchResult.model_validate(result, from_attributes=True)


@router.post("/referrals/{referrer_id}/credit", response_model=schemas.ReferralCredit)
def issue_referral_credit(
    referrer_id: int,
    db: Session = Depends(get_db),
    _: deps.Caller = Depends(deps.require_roles("admin")),
):
    try:
        return referral_service.issue_referral_credit(db, referrer_id)
    except referral_service.NoReferralCredit as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except referral_service.ReferralError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
