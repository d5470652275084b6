"""API request and response models for the subscription endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from storefront_billing.models.transitions import SubscriptionTrigger


class CreateTrialRequest(BaseModel):
    """Request to start the automatic trial for a store."""

    user_id: str = Field(..., description="Store owner starting the trial")

    class Config:
        json_schema_extra = {"example": {"user_id": "user-7"}}


class CreateTrialResponse(BaseModel):
    """Outcome of a trial creation."""

    success: bool
    subscription_id: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    error: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "subscription_id": "trial_store-42_1760659200000",
                "trial_ends_at": "2026-10-24T00:00:00+00:00",
                "error": None,
            }
        }


class TransitionRequest(BaseModel):
    """Request to apply a trigger to a subscription."""

    trigger: SubscriptionTrigger = Field(..., description="Transition trigger")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Trigger metadata (user_id, reason, ...)")

    class Config:
        json_schema_extra = {
            "example": {
                "trigger": "plan_changed",
                "metadata": {"user_id": "user-7", "new_plan_type": "pro"},
            }
        }


class FeatureAvailabilityResponse(BaseModel):
    """Feature gate answer for a store."""

    store_id: str
    feature: str
    available: bool


class TrialEndingSoonResponse(BaseModel):
    store_id: str
    threshold_days: int
    ending_soon: bool


class WebhookRequest(BaseModel):
    """Processor webhook delivery, already verified by the edge."""

    id: str = Field(..., description="Processor event id, used for de-duplication")
    type: str = Field(..., description="Processor event type (e.g. invoice.payment_failed)")
    data: dict[str, Any] = Field(default_factory=dict, description="Processor object payload")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "evt_1Q2w3E4r",
                "type": "invoice.payment_failed",
                "data": {"subscription": "sub_123", "attempt_count": 2},
            }
        }


class ErrorResponse(BaseModel):
    """Error body returned for AppError failures."""

    error: str
    message: str
    category: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class ReconcileRequest(BaseModel):
    """Caller context for pulling the processor's view of a subscription."""

    user_id: str = Field(..., description="Authenticated user requesting the sync")
    customer_id: Optional[str] = Field(None, description="Processor customer id")

    class Config:
        json_schema_extra = {"example": {"user_id": "user-7", "customer_id": "cus_Q1w2E3"}}


class LifecycleSummaryResponse(BaseModel):
    """Where a store's subscription sits in its lifecycle."""

    store_id: str
    subscription_id: str
    status: str
    in_trial: bool
    in_grace_period: bool
    payment_overdue: bool
    auto_renews: bool
    retry_in_days: Optional[float] = None
    next_renewal_at: Optional[datetime] = None
    upcoming_events: dict[str, int] = Field(default_factory=dict)
