from datetime import datetime
from pydantic import BaseModel


class ReferralCredit(BaseModel):
    id: int
    referrer_id: int
    amount: float
    code: str
    created_at: datetime | None = None

    class Config:
        from_attributes = True
