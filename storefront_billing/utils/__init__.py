"""Utility functions and helpers."""

from storefront_billing.utils.billing_period import (
    billing_period_to_timedelta,
    parse_billing_period,
    validate_billing_period,
)
from storefront_billing.utils.clock import epoch_millis, parse_datetime, to_iso, utc_now
from storefront_billing.utils.ids import new_id, trial_subscription_id
from storefront_billing.utils.locks import KeyedLock

__all__ = [
    # Durations
    "parse_billing_period",
    "billing_period_to_timedelta",
    "validate_billing_period",
    # Time
    "utc_now",
    "to_iso",
    "parse_datetime",
    "epoch_millis",
    # Identifiers
    "new_id",
    "trial_subscription_id",
    # Concurrency
    "KeyedLock",
]
