"""Tests for lifecycle logging helpers.

The module logger is replaced with a mock so the emitted event names and
fields can be checked directly.
"""

from unittest.mock import patch

import pytest

from storefront_billing.models import SubscriptionStatus, SubscriptionTrigger
from storefront_billing.state_logger import (
    log_payment_attempt,
    log_state_transition,
    log_subscription_event,
    log_transaction_step,
    log_transition_rejected,
)


@pytest.fixture
def logger():
    with patch("storefront_billing.state_logger.logger") as mock_logger:
        yield mock_logger


class TestStateTransitions:
    """Test committed and rejected transition logging."""

    def test_transition_uses_enum_values(self, logger):
        log_state_transition(
            "sub-1",
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionTrigger.PAYMENT_SUCCEEDED,
            store_id="store-1",
            user_id="user-1",
        )

        logger.info.assert_called_once_with(
            "subscription_state_changed",
            old_status="trialing",
            new_status="active",
            trigger="payment_succeeded",
            subscription_id="sub-1",
            store_id="store-1",
            user_id="user-1",
        )

    def test_missing_ids_are_omitted(self, logger):
        log_state_transition("sub-1", "active", "canceled", "manual_cancel")

        kwargs = logger.info.call_args.kwargs
        assert "store_id" not in kwargs
        assert "user_id" not in kwargs

    def test_extra_context_is_passed(self, logger):
        log_state_transition("sub-1", "active", "active", "plan_changed", new_plan_type="pro")
        assert logger.info.call_args.kwargs["new_plan_type"] == "pro"

    def test_rejection_is_a_warning(self, logger):
        log_transition_rejected("sub-1", "canceled", "payment_failed", "Invalid transition")

        logger.warning.assert_called_once()
        args, kwargs = logger.warning.call_args
        assert args == ("subscription_transition_rejected",)
        assert kwargs["status"] == "canceled"
        assert kwargs["reason"] == "Invalid transition"


class TestPaymentAttempts:
    """Test payment outcome logging."""

    def test_success_is_info(self, logger):
        log_payment_attempt("sub-1", True, amount=4900, currency="brl")

        logger.info.assert_called_once()
        assert logger.info.call_args.kwargs["amount"] == 4900
        logger.warning.assert_not_called()

    def test_failure_is_warning(self, logger):
        log_payment_attempt("sub-1", False, reason="card_declined")

        logger.warning.assert_called_once()
        assert logger.warning.call_args.kwargs["reason"] == "card_declined"


class TestEventsAndSteps:
    """Test event store and transaction step logging."""

    def test_subscription_event(self, logger):
        log_subscription_event("sub-1", "created", 1, store_id="store-1")

        logger.info.assert_called_once_with(
            "subscription_event_appended",
            event_type="created",
            version=1,
            subscription_id="sub-1",
            store_id="store-1",
        )

    def test_transaction_step_is_debug(self, logger):
        log_transaction_step(0, "subscriptions", "update", "apply")

        logger.debug.assert_called_once_with(
            "transaction_step", step=0, table="subscriptions", operation="update", phase="apply"
        )
