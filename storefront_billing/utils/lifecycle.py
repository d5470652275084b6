"""Read-only helpers answering questions about a subscription's position in its lifecycle.

All helpers take the ``SubscriptionDetails`` returned by the service (derived
``days_until_*`` fields already filled) and tolerate ``None``.
"""

from datetime import datetime
from typing import Optional

from storefront_billing.models.subscription import SubscriptionDetails, SubscriptionStatus


def get_retry_period(status: SubscriptionStatus, attempt_count: int) -> float:
    """Days to wait before the next payment retry.

    Past-due subscriptions start at 3 days (5 after the first attempt), unpaid
    ones at 7 days; both grow by a factor of 1.5 per attempt.
    """
    if status == SubscriptionStatus.PAST_DUE:
        base_period = 3 if attempt_count == 0 else 5
        return base_period * (1.5 ** attempt_count)
    if status == SubscriptionStatus.UNPAID:
        return 7 * (1.5 ** attempt_count)
    return 3


def is_in_trial_period(subscription: Optional[SubscriptionDetails]) -> bool:
    return subscription is not None and subscription.status == SubscriptionStatus.TRIALING


def is_in_grace_period(subscription: Optional[SubscriptionDetails]) -> bool:
    """Past-due subscriptions keep access while payment is retried."""
    return subscription is not None and subscription.status == SubscriptionStatus.PAST_DUE


def is_payment_overdue(subscription: Optional[SubscriptionDetails]) -> bool:
    return subscription is not None and subscription.status in (
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    )


def will_auto_renew(subscription: Optional[SubscriptionDetails]) -> bool:
    if subscription is None:
        return False
    if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return False
    return not subscription.cancel_at_period_end


def get_upcoming_events(subscription: Optional[SubscriptionDetails]) -> dict[str, int]:
    """Days until each scheduled event (next_payment, trial_end, cancellation)."""
    if subscription is None:
        return {}

    events: dict[str, int] = {}
    if subscription.days_until_due is not None:
        events["next_payment"] = subscription.days_until_due
        if subscription.cancel_at_period_end:
            events["cancellation"] = subscription.days_until_due
    if subscription.days_until_trial_end is not None:
        events["trial_end"] = subscription.days_until_trial_end
    return events


def get_next_renewal_date(subscription: Optional[SubscriptionDetails]) -> Optional[datetime]:
    if subscription is None or subscription.period_end is None:
        return None
    if subscription.status == SubscriptionStatus.CANCELED:
        return None
    if subscription.cancel_at_period_end and subscription.status != SubscriptionStatus.TRIALING:
        return None
    if subscription.status == SubscriptionStatus.TRIALING and subscription.trial_end:
        return subscription.trial_end
    return subscription.period_end
