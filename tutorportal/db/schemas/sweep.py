from pydantic import BaseModel, Field


class ExpirySweep(BaseModel):
    expired_count: int
    notifications_sent: int
    notifications_failed: int = 0
    anomalies: int = 0
    errors: list[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class DeliverySummary(BaseModel):
    sent: int
    skipped: int
    failed: int

    class Config:
        from_attributes = True
