"""Pydantic schemas for the billing API."""
from datetime import datetime

from pydantic import BaseModel, Field


class UsageResponse(BaseModel):
    """Current-month usage for the caller."""
    plan: str
    count: int
    limit: int | None = Field(None, description="Monthly quota; null means unlimited")
    month: str
    resets_at: datetime | None = None


class SubscriptionInfo(BaseModel):
    """Provider-backed subscription details."""
    id: str | None
    status: str
    current_period_end: datetime | None = None

    class Config:
        from_attributes = True


class SubscriptionResponse(BaseModel):
    """Plan the caller is entitled to, plus the record behind it."""
    plan_id: str
    subscription: SubscriptionInfo | None = None


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""
    plan: str = Field(..., min_length=1, max_length=50)


class RedirectResponse(BaseModel):
    """A provider-hosted page to send the user to."""
    url: str


class CancelResponse(BaseModel):
    success: bool


class WebhookAck(BaseModel):
    received: bool = True
