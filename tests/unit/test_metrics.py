"""Tests for lifecycle metrics and the rate alerts built on them."""

from unittest.mock import patch

import pytest

from storefront_billing.metrics import (
    AlertSeverity,
    BillingMetrics,
    cancellation_severity,
    payment_failure_severity,
)


@pytest.fixture
def metrics():
    return BillingMetrics(alert_min_sample=10)


class TestSeverityBands:
    """Test the alert thresholds."""

    @pytest.mark.parametrize(
        "rate,expected",
        [
            (0.05, None),
            (0.1, None),
            (0.15, AlertSeverity.WARNING),
            (0.25, AlertSeverity.ERROR),
            (0.31, AlertSeverity.CRITICAL),
        ],
    )
    def test_payment_failure(self, rate, expected):
        assert payment_failure_severity(rate) == expected

    @pytest.mark.parametrize(
        "rate,expected",
        [(0.05, None), (0.1, AlertSeverity.WARNING), (0.16, AlertSeverity.ERROR)],
    )
    def test_cancellation(self, rate, expected):
        assert cancellation_severity(rate) == expected


class TestRateAlerts:
    """Test alerting from recorded payments and cancellations."""

    def test_small_samples_are_not_alerted(self, metrics):
        with patch("storefront_billing.metrics.logger") as logger:
            for _ in range(5):
                metrics.record_payment(False, plan_type="pro")

        logger.critical.assert_not_called()

    def test_failure_rate_alert_is_logged_once_per_band(self, metrics):
        with patch("storefront_billing.metrics.logger") as logger:
            for _ in range(6):
                metrics.record_payment(True, plan_type="pro")
            for _ in range(4):
                metrics.record_payment(False, reason="card_declined", plan_type="pro")
            metrics.record_payment(False, plan_type="pro")

        logger.critical.assert_called_once()
        args, kwargs = logger.critical.call_args
        assert args == ("subscription_alert",)
        assert kwargs["alert"] == "high_payment_failure_rate"
        assert kwargs["plan_type"] == "pro"
        assert kwargs["rate"] == 0.4
        assert metrics.registry.get_sample_value(
            "subscription_alert_rate", {"alert": "high_payment_failure_rate", "plan_type": "pro"}
        ) == pytest.approx(5 / 11)

    def test_plans_are_tracked_separately(self, metrics):
        with patch("storefront_billing.metrics.logger") as logger:
            for _ in range(10):
                metrics.record_payment(True, plan_type="starter")
            for _ in range(3):
                metrics.record_payment(False, plan_type="pro")

        logger.warning.assert_not_called()
        logger.error.assert_not_called()
        logger.critical.assert_not_called()

    def test_cancellation_rate_alert(self, metrics):
        with patch("storefront_billing.metrics.logger") as logger:
            for _ in range(10):
                metrics.record_new_subscription("starter")
            metrics.record_cancellation("user_requested", "starter", age_days=3)

        logger.warning.assert_called_once()
        assert logger.warning.call_args.kwargs["alert"] == "high_cancellation_rate"
        assert logger.warning.call_args.kwargs["severity"] == "warning"

    def test_recovery_is_logged(self, metrics):
        with patch("storefront_billing.metrics.logger") as logger:
            for _ in range(10):
                metrics.record_new_subscription("starter")
            metrics.record_cancellation("user_requested", "starter")
            for _ in range(20):
                metrics.record_new_subscription("starter")

        logger.info.assert_any_call(
            "subscription_alert_resolved", alert="high_cancellation_rate", plan_type="starter", rate=0.05
        )

    def test_payments_without_plan_only_count(self, metrics):
        metrics.record_payment(False, reason="card_declined")

        assert metrics.registry.get_sample_value(
            "subscription_payment_failure_total", {"reason": "card_declined"}
        ) == 1.0
