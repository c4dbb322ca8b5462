from typing import Optional

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    status: str  # processed, failed_recorded, duplicate, ignored, unapplied
    message: str
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    action: Optional[str] = None  # activated, extended


class TransitionSummaryResponse(BaseModel):
    success: bool = True
    scanned: int
    processed: int
    activated: int
    moved_to_grace: int
    expired: int
    trial_expired: int
    errors: int
