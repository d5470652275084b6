"""Transition triggers, the legal transition table and transition results."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront_billing.models.subscription import SubscriptionStatus


class SubscriptionTrigger(str, Enum):
    """Causes that can move a subscription between statuses."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDED = "trial_ended"
    MANUAL_CANCEL = "manual_cancel"
    AUTO_CANCEL = "auto_cancel"
    PLAN_CHANGED = "plan_changed"
    PAYMENT_RETRY_FAILED = "payment_retry_failed"
    PAYMENT_RETRY_SUCCEEDED = "payment_retry_succeeded"
    REACTIVATE = "reactivate"
    CREATE = "create"


_S = SubscriptionStatus
_T = SubscriptionTrigger

# Only the listed (status, trigger) pairs are legal.
VALID_TRANSITIONS: dict[SubscriptionStatus, dict[SubscriptionTrigger, SubscriptionStatus]] = {
    _S.INACTIVE: {
        _T.CREATE: _S.TRIALING,
    },
    _S.TRIALING: {
        _T.PAYMENT_SUCCEEDED: _S.ACTIVE,
        _T.PAYMENT_FAILED: _S.INCOMPLETE,
        _T.TRIAL_ENDED: _S.INCOMPLETE,
        _T.MANUAL_CANCEL: _S.CANCELED,
    },
    _S.ACTIVE: {
        _T.PAYMENT_SUCCEEDED: _S.ACTIVE,
        _T.PAYMENT_FAILED: _S.PAST_DUE,
        _T.MANUAL_CANCEL: _S.CANCELED,
        _T.AUTO_CANCEL: _S.CANCELED,
        _T.PLAN_CHANGED: _S.ACTIVE,
    },
    _S.PAST_DUE: {
        _T.PAYMENT_RETRY_SUCCEEDED: _S.ACTIVE,
        _T.PAYMENT_RETRY_FAILED: _S.UNPAID,
        _T.MANUAL_CANCEL: _S.CANCELED,
    },
    _S.UNPAID: {
        _T.PAYMENT_RETRY_SUCCEEDED: _S.ACTIVE,
        _T.MANUAL_CANCEL: _S.CANCELED,
        _T.AUTO_CANCEL: _S.CANCELED,
        _T.REACTIVATE: _S.ACTIVE,
    },
    _S.CANCELED: {
        _T.REACTIVATE: _S.ACTIVE,
        _T.CREATE: _S.TRIALING,
    },
    _S.INCOMPLETE: {
        _T.PAYMENT_SUCCEEDED: _S.ACTIVE,
        _T.PAYMENT_FAILED: _S.INCOMPLETE_EXPIRED,
        _T.MANUAL_CANCEL: _S.CANCELED,
    },
    _S.INCOMPLETE_EXPIRED: {
        _T.MANUAL_CANCEL: _S.CANCELED,
        _T.CREATE: _S.TRIALING,
    },
}


def next_status(
    status: SubscriptionStatus, trigger: SubscriptionTrigger
) -> Optional[SubscriptionStatus]:
    """Target status for ``(status, trigger)``, or None when the pair is illegal."""
    return VALID_TRANSITIONS.get(status, {}).get(trigger)


def allowed_triggers(status: SubscriptionStatus) -> list[SubscriptionTrigger]:
    """Triggers accepted from ``status``."""
    return list(VALID_TRANSITIONS.get(status, {}))


def payment_trigger(status: Optional[SubscriptionStatus], succeeded: bool) -> SubscriptionTrigger:
    """Trigger for a payment outcome; past-due and unpaid subscriptions are retrying."""
    retrying = status in (_S.PAST_DUE, _S.UNPAID)
    if succeeded:
        return _T.PAYMENT_RETRY_SUCCEEDED if retrying else _T.PAYMENT_SUCCEEDED
    return _T.PAYMENT_RETRY_FAILED if retrying else _T.PAYMENT_FAILED


# Order in which triggers are tried when searching for a path between statuses.
_PATH_PREFERENCE = (
    _T.PAYMENT_SUCCEEDED,
    _T.PAYMENT_RETRY_SUCCEEDED,
    _T.REACTIVATE,
    _T.PAYMENT_FAILED,
    _T.PAYMENT_RETRY_FAILED,
    _T.TRIAL_ENDED,
    _T.AUTO_CANCEL,
    _T.MANUAL_CANCEL,
    _T.CREATE,
)


def transition_path(
    start: SubscriptionStatus, target: SubscriptionStatus
) -> Optional[list[SubscriptionTrigger]]:
    """Shortest trigger sequence leading from ``start`` to ``target``.

    Returns an empty list when both are equal and None when ``target`` is
    unreachable. Ties are broken by trigger preference (payments before
    cancellations).
    """
    if start == target:
        return []
    paths: dict[SubscriptionStatus, list[SubscriptionTrigger]] = {start: []}
    frontier = [start]
    while frontier:
        following = []
        for status in frontier:
            edges = VALID_TRANSITIONS.get(status, {})
            for trigger in _PATH_PREFERENCE:
                reached = edges.get(trigger)
                if reached is None or reached in paths:
                    continue
                paths[reached] = paths[status] + [trigger]
                if reached == target:
                    return paths[reached]
                following.append(reached)
        frontier = following
    return None


class TriggerMetadata(BaseModel):
    """Typed view of the metadata accompanying a trigger.

    Known keys are coerced (``"2"`` becomes ``2``); values that cannot be
    coerced fail validation. Unknown keys pass through unchanged.
    """

    model_config = ConfigDict(extra="allow")

    user_id: Optional[str] = None
    reason: Optional[str] = None
    new_plan_type: Optional[str] = None
    attempt_count: Optional[int] = Field(None, ge=1, description="Processor payment attempt number")
    amount: Optional[int] = Field(None, ge=0, description="Amount in minor units")
    next_payment_at: Optional[datetime] = None


class TransitionRecord(BaseModel):
    """Audit row in ``subscription_transitions``."""

    subscription_id: str
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    trigger: SubscriptionTrigger
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class TransitionResult(BaseModel):
    """Outcome of ``SubscriptionStateMachine.transition``."""

    success: bool
    previous_status: Optional[SubscriptionStatus] = None
    new_status: Optional[SubscriptionStatus] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "previous_status": "trialing",
                "new_status": "active",
                "error": None,
            }
        }
