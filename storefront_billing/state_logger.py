"""Lifecycle logging helpers for subscriptions.

Tags each line with the subscription, store and user it concerns so a single
subscription's history can be pulled out of the log stream.
"""

from typing import Any, Optional

from storefront_billing.logging_config import get_logger

logger = get_logger(__name__)


def _text(value: Any) -> str:
    return str(getattr(value, "value", value))


def _correlation(
    subscription_id: Optional[str],
    store_id: Optional[str],
    user_id: Optional[str],
) -> dict[str, str]:
    ids = {
        "subscription_id": subscription_id,
        "store_id": store_id,
        "user_id": user_id,
    }
    return {key: value for key, value in ids.items() if value}


def log_state_transition(
    subscription_id: str,
    old_status: Any,
    new_status: Any,
    trigger: Any,
    store_id: Optional[str] = None,
    user_id: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a committed subscription status transition.

    Args:
        subscription_id: Subscription identifier
        old_status: Status before the transition
        new_status: Status after the transition
        trigger: Trigger that caused the transition
        store_id: Owning store, if known
        user_id: Acting user, if known
        **extra_context: Additional fields
    """
    logger.info(
        "subscription_state_changed",
        old_status=_text(old_status),
        new_status=_text(new_status),
        trigger=_text(trigger),
        **_correlation(subscription_id, store_id, user_id),
        **extra_context,
    )


def log_transition_rejected(
    subscription_id: str,
    status: Any,
    trigger: Any,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a transition the state machine refused."""
    logger.warning(
        "subscription_transition_rejected",
        status=_text(status),
        trigger=_text(trigger),
        reason=reason,
        **_correlation(subscription_id, None, None),
        **extra_context,
    )


def log_payment_attempt(
    subscription_id: str,
    succeeded: bool,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    reason: Optional[str] = None,
    store_id: Optional[str] = None,
    user_id: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a payment outcome reported by the billing processor.

    Args:
        subscription_id: Subscription identifier
        succeeded: Whether the charge went through
        amount: Amount in minor units
        currency: ISO 4217 currency code
        reason: Failure reason for unsuccessful attempts
        store_id: Owning store, if known
        user_id: Paying user, if known
        **extra_context: Additional fields
    """
    log = logger.info if succeeded else logger.warning
    log(
        "payment_attempt",
        succeeded=succeeded,
        amount=amount,
        currency=currency,
        reason=reason,
        **_correlation(subscription_id, store_id, user_id),
        **extra_context,
    )


def log_transaction_step(
    index: int,
    table: str,
    operation: str,
    phase: str,
    **extra_context: Any,
) -> None:
    """Log one step of a transaction plan (apply or compensate)."""
    logger.debug(
        "transaction_step",
        step=index,
        table=table,
        operation=operation,
        phase=phase,
        **extra_context,
    )


def log_subscription_event(
    subscription_id: str,
    event_type: Any,
    version: int,
    store_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """Log a lifecycle event appended to the event store."""
    logger.info(
        "subscription_event_appended",
        event_type=_text(event_type),
        version=version,
        **_correlation(subscription_id, store_id, user_id),
    )
