"""Subscription status and read models.

``SubscriptionRecord`` mirrors a row of the ``subscriptions`` table.
``SubscriptionDetails`` is what the service hands to the rest of the
application; its ``days_until_*`` fields are filled in at read time.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from storefront_billing.models.plan import PlanType


class SubscriptionStatus(str, Enum):
    """Subscription billing status."""

    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def is_active_status(status: str) -> bool:
    """``is_active`` is always derived from status."""
    return status in {s.value for s in ACTIVE_STATUSES}


class SubscriptionRecord(BaseModel):
    """One row of the ``subscriptions`` table (at most one per store)."""

    id: str = Field(..., description="Subscription identifier")
    store_id: str = Field(..., description="Owning store (tenant)")
    user_id: Optional[str] = Field(None, description="Store owner")
    billing_reference: Optional[str] = Field(None, description="External processor subscription id")
    plan_type: PlanType = Field(default=PlanType.FREE, description="Plan tier")
    plan_name: Optional[str] = Field(None, description="Plan display name")
    plan_id: Optional[str] = Field(None, description="Processor price/plan reference")
    status: SubscriptionStatus = Field(default=SubscriptionStatus.INACTIVE, description="Current status")
    active: bool = Field(default=False, description="Derived: status in {active, trialing}")
    trial_ends_at: Optional[datetime] = Field(None, description="Trial end")
    next_payment_at: Optional[datetime] = Field(None, description="Next billing date")
    amount: int = Field(default=0, description="Price in minor units")
    currency: str = Field(default="brl", description="ISO 4217 currency code")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "trial_store-42_1760659200000",
                "store_id": "store-42",
                "user_id": "user-7",
                "billing_reference": None,
                "plan_type": "enterprise",
                "plan_name": "Enterprise",
                "plan_id": "enterprise_trial",
                "status": "trialing",
                "active": True,
                "trial_ends_at": "2026-10-24T00:00:00+00:00",
                "amount": 19900,
                "currency": "brl",
            }
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SubscriptionRecord":
        return cls.model_validate({k: v for k, v in row.items() if v is not None})

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class SubscriptionDetails(BaseModel):
    """Subscription view returned to callers."""

    id: str
    store_id: str
    user_id: Optional[str] = None
    status: SubscriptionStatus
    plan_type: PlanType
    plan_name: Optional[str] = None
    is_active: bool
    billing_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    price: int = 0
    currency: str = "brl"
    interval: str = "month"
    canceled_at: Optional[datetime] = None
    canceled_reason: Optional[str] = None
    payment_attempts: int = 0
    plan_history: list[dict[str, Any]] = Field(default_factory=list)

    # Derived at read time, never cached
    days_until_due: Optional[int] = None
    days_until_trial_end: Optional[int] = None

    def with_derived_fields(self, now: datetime) -> "SubscriptionDetails":
        """Copy with ``days_until_due``/``days_until_trial_end`` computed against ``now``."""
        return self.model_copy(
            update={
                "days_until_due": days_until(self.period_end, now) if self.period_end else None,
                "days_until_trial_end": days_until(self.trial_end, now) if self.trial_end else None,
            }
        )


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days remaining until ``moment``, rounded up, never negative."""
    return max(0, math.ceil((moment - now).total_seconds() / 86400))
