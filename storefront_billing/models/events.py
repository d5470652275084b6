"""Lifecycle event and projected state models.

Each event type has exactly one payload model. Rows whose ``event_type`` is not
recognised load as ``OpaquePayload`` so old or foreign events still replay.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class LifecycleEventType(str, Enum):
    """Kinds of lifecycle event recorded in the event store."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_STARTED = "trial_started"
    TRIAL_ENDED = "trial_ended"
    PLAN_CHANGED = "plan_changed"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class CreatedPayload(_Payload):
    event_type: Literal["created"] = "created"
    status: str = Field(default="trialing", description="Initial status")
    plan_type: Optional[str] = None
    plan_name: Optional[str] = None
    price: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None


class UpdatedPayload(_Payload):
    event_type: Literal["updated"] = "updated"
    status: Optional[str] = None
    is_active: Optional[bool] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CanceledPayload(_Payload):
    event_type: Literal["canceled"] = "canceled"
    reason: str = "user_request"
    canceled_at: Optional[datetime] = None


class PaymentSucceededPayload(_Payload):
    event_type: Literal["payment_succeeded"] = "payment_succeeded"
    amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    next_payment_at: Optional[datetime] = None


class PaymentFailedPayload(_Payload):
    event_type: Literal["payment_failed"] = "payment_failed"
    attempt_count: int = 1
    reason: str = "unknown"
    failed_at: Optional[datetime] = None


class TrialStartedPayload(_Payload):
    event_type: Literal["trial_started"] = "trial_started"
    trial_ends_at: Optional[datetime] = None


class TrialEndedPayload(_Payload):
    event_type: Literal["trial_ended"] = "trial_ended"
    payment_succeeded: bool = False


class PlanChangedPayload(_Payload):
    event_type: Literal["plan_changed"] = "plan_changed"
    new_plan_type: str
    plan_name: Optional[str] = None
    price: Optional[int] = None
    currency: Optional[str] = None


class OpaquePayload(_Payload):
    """Payload of an event type this code does not know about."""

    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)


KnownPayload = Union[
    CreatedPayload,
    UpdatedPayload,
    CanceledPayload,
    PaymentSucceededPayload,
    PaymentFailedPayload,
    TrialStartedPayload,
    TrialEndedPayload,
    PlanChangedPayload,
]

EventPayload = Union[KnownPayload, OpaquePayload]

PAYLOAD_TYPES: dict[str, type[BaseModel]] = {
    LifecycleEventType.CREATED.value: CreatedPayload,
    LifecycleEventType.UPDATED.value: UpdatedPayload,
    LifecycleEventType.CANCELED.value: CanceledPayload,
    LifecycleEventType.PAYMENT_SUCCEEDED.value: PaymentSucceededPayload,
    LifecycleEventType.PAYMENT_FAILED.value: PaymentFailedPayload,
    LifecycleEventType.TRIAL_STARTED.value: TrialStartedPayload,
    LifecycleEventType.TRIAL_ENDED.value: TrialEndedPayload,
    LifecycleEventType.PLAN_CHANGED.value: PlanChangedPayload,
}


def parse_payload(event_type: str, data: Optional[dict[str, Any]]) -> EventPayload:
    """Build the typed payload for ``event_type`` from its stored data.

    Args:
        event_type: Event type string as stored
        data: Stored payload map (may be None)

    Returns:
        The matching payload model, or ``OpaquePayload`` for unknown types
    """
    data = dict(data or {})
    payload_type = PAYLOAD_TYPES.get(event_type)
    if payload_type is None:
        return OpaquePayload(event_type=event_type, data=data)
    data.pop("event_type", None)
    return payload_type.model_validate(data)


def payload_data(payload: EventPayload) -> dict[str, Any]:
    """Stored form of a payload (JSON-safe, without the tag)."""
    if isinstance(payload, OpaquePayload):
        return dict(payload.data)
    return payload.model_dump(mode="json", exclude={"event_type"}, exclude_none=True)


class LifecycleEvent(BaseModel):
    """Immutable fact about one subscription; one row of ``subscription_events``."""

    model_config = ConfigDict(frozen=True)

    id: str
    subscription_id: str
    store_id: str
    user_id: Optional[str] = None
    event_type: str
    version: int = Field(..., ge=1, description="Per-subscription version, contiguous from 1")
    timestamp: datetime
    payload: EventPayload
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "LifecycleEvent":
        return cls(
            id=str(row["id"]),
            subscription_id=row["subscription_id"],
            store_id=row["store_id"],
            user_id=row.get("user_id"),
            event_type=row["event_type"],
            version=row["version"],
            timestamp=row["timestamp"],
            payload=parse_payload(row["event_type"], row.get("data")),
            metadata=row.get("metadata") or {},
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "data": payload_data(self.payload),
            "metadata": self.metadata,
        }


class ProjectedState(BaseModel):
    """Current state obtained by folding a subscription's events in order."""

    subscription_id: str
    store_id: str
    status: str = "inactive"
    plan_type: str = "free"
    is_active: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    class Config:
        json_schema_extra = {
            "example": {
                "subscription_id": "trial_store-42_1760659200000",
                "store_id": "store-42",
                "status": "active",
                "plan_type": "pro",
                "is_active": True,
                "metadata": {"plan_history": [{"from": "enterprise", "to": "pro"}]},
                "version": 3,
            }
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ProjectedState":
        return cls.model_validate({k: v for k, v in row.items() if v is not None})

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
