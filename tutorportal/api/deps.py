import hmac
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from ..config import get_settings
from ..core.security import decode_identity_token
from ..db.models import ProfileRole
from ..services import reservation_service


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    id: int
    role: ProfileRole


def get_caller(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Caller:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = decode_identity_token(credentials.credentials)
    except JWTError as exc:
        raise credentials_exception from exc
    subject = payload.get("sub")
    try:
        return Caller(id=int(subject), role=ProfileRole(payload.get("role")))
    except (TypeError, ValueError) as exc:
        raise credentials_exception from exc


def require_roles(*roles: str):
    def dependency(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
        if caller.role.value not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return caller

    return dependency


def require_cron_secret(authorization: Annotated[str | None, Header()] = None) -> None:
    secret = get_settings().cron_secret
    expected = f"Bearer {secret}"
    if not secret or not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


_RESERVATION_ERROR_STATUS = (
    (reservation_service.CapacityExceeded, status.HTTP_409_CONFLICT),
    (reservation_service.DuplicateReservation, status.HTTP_409_CONFLICT),
    (reservation_service.BatchNotFound, status.HTTP_404_NOT_FOUND),
    (reservation_service.InvalidTerm, status.HTTP_400_BAD_REQUEST),
    (reservation_service.InvalidReservationRequest, status.HTTP_400_BAD_REQUEST),
)


def reservation_http_error(exc: reservation_service.ReservationError) -> HTTPException:
    for error_type, status_code in _RESERVATION_ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
