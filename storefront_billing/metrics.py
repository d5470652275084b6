"""Prometheus metrics for the subscription lifecycle.

Metrics live on an injectable ``CollectorRegistry`` so tests and multiple app
instances never collide on the process-wide default registry.
"""

import time
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from storefront_billing.logging_config import get_logger

logger = get_logger(__name__)

PAYMENT_FAILURE_ALERT_RATE = 0.1
CANCELLATION_ALERT_RATE = 0.05
# Rates over fewer observations than this per plan are not alerted on.
ALERT_MIN_SAMPLE = 20


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def payment_failure_severity(rate: float) -> Optional[AlertSeverity]:
    """Severity of a payment failure rate; None at or below 10%."""
    if rate <= PAYMENT_FAILURE_ALERT_RATE:
        return None
    if rate > 0.3:
        return AlertSeverity.CRITICAL
    if rate > 0.2:
        return AlertSeverity.ERROR
    return AlertSeverity.WARNING


def cancellation_severity(rate: float) -> Optional[AlertSeverity]:
    """Severity of a cancellation rate; None at or below 5%."""
    if rate <= CANCELLATION_ALERT_RATE:
        return None
    return AlertSeverity.ERROR if rate > 0.15 else AlertSeverity.WARNING


def send_alert(alert: str, severity: AlertSeverity, plan_type: str, rate: float) -> None:
    """Emit an operator alert as a structured log line at the matching level."""
    getattr(logger, severity.value)(
        "subscription_alert",
        alert=alert,
        severity=severity.value,
        plan_type=plan_type,
        rate=round(rate, 4),
    )


class BillingMetrics:
    """Counters, gauges and histograms for transitions, payments and caches.

    Args:
        registry: Registry to register collectors on; a private one is created if omitted
        alert_min_sample: Observations per plan required before rates are alerted on
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, alert_min_sample: int = ALERT_MIN_SAMPLE):
        self.registry = registry or CollectorRegistry()
        self._alert_min_sample = alert_min_sample
        self._payments: dict[str, list[int]] = defaultdict(lambda: [0, 0])  # plan -> [attempts, failures]
        self._signups: dict[str, list[int]] = defaultdict(lambda: [0, 0])  # plan -> [created, canceled]
        self._alerted: dict[tuple[str, str], Optional[AlertSeverity]] = {}

        self.transitions = Counter(
            "subscription_transitions_total",
            "Committed subscription status transitions",
            ["from_status", "to_status", "trigger"],
            registry=self.registry,
        )
        self.transition_failures = Counter(
            "subscription_transition_failures_total",
            "Rejected or failed transitions",
            ["reason"],
            registry=self.registry,
        )
        self.payment_success = Counter(
            "subscription_payment_success_total",
            "Successful subscription payments",
            registry=self.registry,
        )
        self.payment_failure = Counter(
            "subscription_payment_failure_total",
            "Failed subscription payments",
            ["reason"],
            registry=self.registry,
        )
        self.new_subscriptions = Counter(
            "subscription_created_total",
            "Subscriptions created",
            ["plan_type"],
            registry=self.registry,
        )
        self.canceled_subscriptions = Counter(
            "subscription_canceled_total",
            "Subscriptions canceled",
            ["reason"],
            registry=self.registry,
        )
        self.cache_requests = Counter(
            "subscription_cache_requests_total",
            "Cache lookups by outcome",
            ["cache", "result"],
            registry=self.registry,
        )
        self.transactions = Counter(
            "subscription_transactions_total",
            "Transaction plans by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.cache_size = Gauge(
            "subscription_cache_size",
            "Entries currently held by a cache",
            ["cache"],
            registry=self.registry,
        )
        self.cache_hit_rate = Gauge(
            "subscription_cache_hit_rate",
            "Cache hit ratio since start",
            ["cache"],
            registry=self.registry,
        )
        self.operation_duration = Histogram(
            "subscription_operation_duration_seconds",
            "Duration of lifecycle operations",
            ["operation"],
            registry=self.registry,
        )
        self.subscription_duration = Histogram(
            "subscription_lifetime_days",
            "Age of subscriptions at cancellation",
            ["plan_type"],
            buckets=(1, 7, 14, 30, 90, 180, 365, 730),
            registry=self.registry,
        )
        self.alert_rate = Gauge(
            "subscription_alert_rate",
            "Rate watched by operator alerts, per plan",
            ["alert", "plan_type"],
            registry=self.registry,
        )

    def record_transition(self, from_status: str, to_status: str, trigger: str) -> None:
        self.transitions.labels(from_status=from_status, to_status=to_status, trigger=trigger).inc()

    def record_transition_failure(self, reason: str) -> None:
        self.transition_failures.labels(reason=reason).inc()

    def record_payment(self, succeeded: bool, reason: str = "unknown", plan_type: Optional[str] = None) -> None:
        if succeeded:
            self.payment_success.inc()
        else:
            self.payment_failure.labels(reason=reason).inc()
        if plan_type is None:
            return
        tally = self._payments[plan_type]
        tally[0] += 1
        tally[1] += 0 if succeeded else 1
        self._check_rate("high_payment_failure_rate", plan_type, tally[1], tally[0], payment_failure_severity)

    def record_new_subscription(self, plan_type: str) -> None:
        self.new_subscriptions.labels(plan_type=plan_type).inc()
        tally = self._signups[plan_type]
        tally[0] += 1
        self._check_rate("high_cancellation_rate", plan_type, tally[1], tally[0], cancellation_severity)

    def record_cancellation(self, reason: str, plan_type: Optional[str] = None, age_days: Optional[float] = None) -> None:
        self.canceled_subscriptions.labels(reason=reason).inc()
        if plan_type is None:
            return
        if age_days is not None:
            self.subscription_duration.labels(plan_type=plan_type).observe(age_days)
        tally = self._signups[plan_type]
        tally[1] += 1
        self._check_rate("high_cancellation_rate", plan_type, tally[1], tally[0], cancellation_severity)

    def _check_rate(self, alert: str, plan_type: str, count: int, total: int, severity_for) -> None:
        """Update the rate gauge and alert when the severity band changes."""
        if total < self._alert_min_sample:
            return
        rate = min(1.0, count / total)
        self.alert_rate.labels(alert=alert, plan_type=plan_type).set(rate)
        severity = severity_for(rate)
        if self._alerted.get((alert, plan_type)) == severity:
            return
        self._alerted[(alert, plan_type)] = severity
        if severity is not None:
            send_alert(alert, severity, plan_type, rate)
        else:
            logger.info("subscription_alert_resolved", alert=alert, plan_type=plan_type, rate=round(rate, 4))

    def record_cache_lookup(self, cache: str, hit: bool) -> None:
        self.cache_requests.labels(cache=cache, result="hit" if hit else "miss").inc()

    def record_cache_state(self, cache: str, size: int, hit_rate: float) -> None:
        self.cache_size.labels(cache=cache).set(size)
        self.cache_hit_rate.labels(cache=cache).set(hit_rate)

    def record_transaction(self, outcome: str) -> None:
        self.transactions.labels(outcome=outcome).inc()

    @asynccontextmanager
    async def time_operation(self, operation: str) -> AsyncIterator[None]:
        """Observe the wall time of the wrapped block, including failures."""
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self.operation_duration.labels(operation=operation).observe(elapsed)
            logger.debug("operation_timed", operation=operation, duration_ms=round(elapsed * 1000, 2))

    def render(self) -> bytes:
        """Render the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)
