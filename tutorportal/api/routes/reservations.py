from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session
from ...api import deps
from ...db.session import get_db
from ...db import models, schemas
from ...services import payment_service, reservation_service

router = APIRouter(tags=["reservations"])


def _student_for(db: Session, caller: deps.Caller, requested_id: int | None) -> int:
    if caller.role == models.ProfileRole.student:
        if requested_id not in (None, caller.id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return caller.id
    if requested_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="student_id is required")
    if caller.role == models.ProfileRole.parent:
        link = db.scalar(
            select(models.GuardianLink.id).where(
                models.GuardianLink.parent_id == caller.id,
                models.GuardianLink.student_id == requested_id,
            )
        )
        if link is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return requested_id


@router.post("/reservations", response_model=schemas.ReservationResult, status_code=status.HTTP_201_CREATED)
def create_reservation(
    payload: schemas.ReservationCreate,
    db: Session = Depends(get_db),
    caller: deps.Caller = Depends(deps.require_roles("student", "parent", "admin")),
):
    student_id = _student_for(db, caller, payload.student_id)
    try:
        result = reservation_service.reserve(db, student_id, payload.class_ids, payload.payment_method)
    except reservation_service.ReservationError as exc:
        raise deps.reservation_http_error(exc) from exc
    except payment_service.PaymentGatewayError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return schemas.ReservationResult.model_validate(result, from_attributes=True)


@router.post("/reservations/etransfer-sent", response_model=schemas.BatchResult)
def etransfer_sent(
    payload: schemas.EtransferSent,
    db: Session = Depends(get_db),
    caller: deps.Caller = Depends(deps.require_roles("student", "parent", "admin")),
):
    student_id = caller.id if caller.role == models.ProfileRole.student else None
    try:
        result = reservation_service.mark_etransfer_sent(db, payload.batch_token, student_id=student_id)
    except reservation_service.ReservationError as exc:
        raise deps.reservation_http_error(exc) from exc
    return schemas.BatchResult.model_validate(result, from_attributes=True)


@router.get("/classes/{class_id}/seats", response_model=schemas.ClassSeats)
def class_seats(class_id: int, db: Session = Depends(get_db)):
    try:
        remaining = reservation_service.remaining_seats(db, class_id)
    except reservation_service.InvalidReservationRequest as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return schemas.ClassSeats(class_id=class_id, remaining_seats=remaining)
