"""Shared fixtures: an in-memory store and the service graph built on it."""

from datetime import datetime, timedelta, timezone

import pytest

from storefront_billing.metrics import BillingMetrics
from storefront_billing.models import (
    BillingSettings,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from storefront_billing.repositories.memory_store import InMemoryDataStore
from storefront_billing.services.cache import SubscriptionCacheManager, TTLCache
from storefront_billing.services.event_store import SubscriptionEventStore
from storefront_billing.services.notification_sink import NotificationSink
from storefront_billing.services.state_machine import SubscriptionStateMachine
from storefront_billing.services.subscription_service import SubscriptionService
from storefront_billing.services.transaction_manager import TransactionManager

FIXED_NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class RecordingNotificationSink(NotificationSink):
    """Keeps notifications in a list; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def create_notification(self, user_id, notification_type, title, content, metadata=None):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append(
            {
                "user_id": user_id,
                "type": notification_type,
                "title": title,
                "content": content,
                "metadata": metadata or {},
            }
        )
        return f"n{len(self.sent)}"

    def types(self) -> list[str]:
        return [n["type"] for n in self.sent]


@pytest.fixture
def fixed_now():
    """Clock value shared by the service fixture."""
    return FIXED_NOW


@pytest.fixture
def store():
    """Fresh in-memory data store."""
    return InMemoryDataStore()


@pytest.fixture
def metrics():
    return BillingMetrics()


@pytest.fixture
def notifications():
    return RecordingNotificationSink()


@pytest.fixture
def failing_notifications():
    return RecordingNotificationSink(fail=True)


@pytest.fixture
def cache_manager(metrics):
    return SubscriptionCacheManager(TTLCache(name="test", metrics=metrics))


@pytest.fixture
def event_store(store):
    return SubscriptionEventStore(store)


@pytest.fixture
def state_machine(store, event_store, notifications, cache_manager, metrics):
    return SubscriptionStateMachine(
        store,
        event_store,
        transaction_manager=TransactionManager(store, metrics=metrics),
        notifications=notifications,
        cache=cache_manager,
        metrics=metrics,
    )


@pytest.fixture
def service(store, state_machine, event_store, cache_manager, metrics):
    settings = BillingSettings()
    return SubscriptionService(
        store,
        state_machine,
        event_store,
        cache_manager,
        config=settings.subscription,
        metrics=metrics,
        clock=lambda: FIXED_NOW,
    )


def _make_record(
    subscription_id: str = "sub-1",
    store_id: str = "store-1",
    user_id: str = "user-1",
    plan_type: PlanType = PlanType.STARTER,
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE,
    **fields,
) -> SubscriptionRecord:
    """Subscription row as the trial flow would create it."""
    return SubscriptionRecord(
        id=subscription_id,
        store_id=store_id,
        user_id=user_id,
        plan_type=plan_type,
        plan_name=plan_type.value.title(),
        status=status,
        amount=4900,
        currency="brl",
        trial_ends_at=fields.pop("trial_ends_at", FIXED_NOW + timedelta(days=7)),
        created_at=fields.pop("created_at", FIXED_NOW),
        **fields,
    )


@pytest.fixture
def make_record():
    """Factory for subscription rows (defaults: sub-1 / store-1 / user-1, starter plan)."""
    return _make_record


@pytest.fixture
def create_subscription(state_machine):
    """Async factory creating a trialing subscription through the state machine."""

    async def _create(**fields) -> SubscriptionRecord:
        record = _make_record(**fields)
        result = await state_machine.transition(
            record.id, "create", {"user_id": record.user_id}, new_subscription=record
        )
        assert result.success, result.error
        return record

    return _create


@pytest.fixture
def drive(state_machine):
    """Async helper applying triggers in order; fails on the first rejected one."""

    async def _drive(subscription_id: str, *triggers: str, **metadata) -> None:
        for trigger in triggers:
            result = await state_machine.transition(subscription_id, trigger, dict(metadata))
            assert result.success, f"{trigger}: {result.error}"

    return _drive
