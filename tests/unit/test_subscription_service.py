"""Tests for SubscriptionService reads, feature gate and trial creation."""

from datetime import timedelta

import pytest

from storefront_billing.errors import AppError, ErrorCode
from storefront_billing.models import PlanType, SubscriptionStatus, SubscriptionTrigger
from storefront_billing.services.billing_gateway import BillingSession
from storefront_billing.services.event_store import EVENTS_TABLE
from storefront_billing.services.state_machine import SUBSCRIPTIONS_TABLE


class TestTrialCreation:
    """Test the automatic trial flow."""

    async def test_creates_trialing_enterprise_subscription(self, service, store, event_store, fixed_now):
        response = await service.create_trial_subscription("user-1", "store-1")

        assert response.success
        assert response.subscription_id == f"trial_store-1_{int(fixed_now.timestamp() * 1000)}"
        assert response.trial_ends_at == fixed_now + timedelta(days=7)

        row = store.rows(SUBSCRIPTIONS_TABLE)[0]
        assert row["status"] == "trialing"
        assert row["plan_type"] == "enterprise"
        assert row["amount"] == 19900
        assert row["currency"] == "brl"

        events = await event_store.get_events(response.subscription_id)
        assert [e.event_type for e in events] == ["created", "trial_started"]

    async def test_second_trial_for_store_is_refused(self, service, store):
        """A store can only ever get one trial."""
        first = await service.create_trial_subscription("user-1", "store-1")
        second = await service.create_trial_subscription("user-1", "store-1")

        assert first.success
        assert not second.success
        assert "already exists" in second.error
        assert store.count(SUBSCRIPTIONS_TABLE) == 1
        created = [r for r in store.rows(EVENTS_TABLE) if r["event_type"] == "created"]
        assert len(created) == 1

    async def test_missing_ids_are_rejected(self, service):
        response = await service.create_trial_subscription("", "store-1")
        assert not response.success

    async def test_new_subscription_is_counted(self, service, metrics):
        await service.create_trial_subscription("user-1", "store-1")
        assert metrics.registry.get_sample_value(
            "subscription_created_total", {"plan_type": "enterprise"}
        ) == 1.0


class TestReads:
    """Test the read path and derived fields."""

    async def test_unknown_store_is_none(self, service):
        assert await service.get_subscription_by_store("nobody") is None
        assert await service.get_subscription_by_id("nothing") is None

    async def test_details_merge_row_and_snapshot(self, service):
        response = await service.create_trial_subscription("user-1", "store-1")

        details = await service.get_subscription_by_store("store-1")

        assert details.id == response.subscription_id
        assert details.status == SubscriptionStatus.TRIALING
        assert details.is_active
        assert details.plan_type == PlanType.ENTERPRISE
        assert details.user_id == "user-1"
        assert details.price == 19900
        assert details.days_until_trial_end == 7

    async def test_reads_are_cached_until_transition(self, service, store):
        response = await service.create_trial_subscription("user-1", "store-1")
        await service.get_subscription_by_store("store-1")
        store.fail_on(SUBSCRIPTIONS_TABLE, "select")

        cached = await service.get_subscription_by_id(response.subscription_id)
        assert cached.status == SubscriptionStatus.TRIALING

        store.clear_failures()
        await service.transition(response.subscription_id, "payment_succeeded")
        fresh = await service.get_subscription_by_store("store-1")
        assert fresh.status == SubscriptionStatus.ACTIVE

    async def test_derived_fields_use_the_clock(self, store, state_machine, event_store, cache_manager, fixed_now):
        from storefront_billing.services.subscription_service import SubscriptionService

        now = {"value": fixed_now}
        service = SubscriptionService(store, state_machine, event_store, cache_manager, clock=lambda: now["value"])
        await service.create_trial_subscription("user-1", "store-1")

        assert (await service.get_subscription_by_store("store-1")).days_until_trial_end == 7
        now["value"] = fixed_now + timedelta(days=5, hours=1)
        assert (await service.get_subscription_by_store("store-1")).days_until_trial_end == 2

    async def test_get_state_with_version_bound(self, service):
        response = await service.create_trial_subscription("user-1", "store-1")
        await service.cancel_subscription(response.subscription_id)

        current = await service.get_state(response.subscription_id)
        first = await service.get_state(response.subscription_id, to_version=1)

        assert current.status == "canceled"
        assert first.status == "trialing"
        assert len(await service.get_events(response.subscription_id)) == 3


class TestFeatureGate:
    """Test feature availability by plan and status."""

    async def test_trial_unlocks_enterprise_features(self, service):
        await service.create_trial_subscription("user-1", "store-1")
        assert await service.can_store_use_feature("store-1", "api_access")
        assert await service.can_store_use_feature("store-1", "erp_integration")

    async def test_unknown_store_and_feature_are_denied(self, service):
        await service.create_trial_subscription("user-1", "store-1")
        assert not await service.can_store_use_feature("store-2", "analytics")
        assert not await service.can_store_use_feature("store-1", "teleportation")

    async def test_canceled_subscription_is_denied(self, service):
        response = await service.create_trial_subscription("user-1", "store-1")
        assert await service.can_store_use_feature("store-1", "analytics")

        await service.cancel_subscription(response.subscription_id)

        assert not await service.can_store_use_feature("store-1", "analytics")

    async def test_starter_plan_limits(self, service, create_subscription, drive):
        await create_subscription(plan_type=PlanType.STARTER)
        await drive("sub-1", "payment_succeeded")
        details = await service.get_subscription_by_store("store-1")

        assert service.is_feature_available(details, "analytics")
        assert not service.is_feature_available(details, "ai_descriptions")
        limits = service.get_plan_limits(details)
        assert limits["max_products"] == 300
        assert limits["features"]["custom_domain"] is True

    def test_no_subscription_gets_free_limits(self, service):
        assert not service.is_feature_available(None, "analytics")
        assert service.get_plan_limits(None)["plan_type"] == "free"


class TestTrialEndingSoon:
    """Test the trial-ending warning."""

    async def test_not_soon_at_start_of_trial(self, service):
        await service.create_trial_subscription("user-1", "store-1")
        assert not await service.is_trial_ending_soon("store-1")

    async def test_soon_with_wider_threshold(self, service):
        await service.create_trial_subscription("user-1", "store-1")
        assert await service.is_trial_ending_soon("store-1", threshold_days=7)

    async def test_not_trialing_is_never_ending_soon(self, service):
        response = await service.create_trial_subscription("user-1", "store-1")
        await service.transition(response.subscription_id, "payment_succeeded")
        assert not await service.is_trial_ending_soon("store-1", threshold_days=30)

    async def test_expired_trial_is_not_ending_soon(self, service, create_subscription, fixed_now):
        await create_subscription(trial_ends_at=fixed_now - timedelta(days=2))
        assert not await service.is_trial_ending_soon("store-1", threshold_days=30)

    async def test_trial_ending_later_today_is_soon(self, service, create_subscription, fixed_now):
        await create_subscription(trial_ends_at=fixed_now + timedelta(hours=3))
        assert await service.is_trial_ending_soon("store-1", threshold_days=1)

    async def test_unknown_store(self, service):
        assert not await service.is_trial_ending_soon("nobody")


class TestLifecycleSummary:
    """Test the lifecycle position view."""

    async def test_trial_summary(self, service, fixed_now):
        await service.create_trial_subscription("user-1", "store-1")

        summary = await service.get_lifecycle_summary("store-1")

        assert summary.status == "trialing"
        assert summary.in_trial
        assert summary.auto_renews
        assert not summary.payment_overdue
        assert summary.retry_in_days is None
        assert summary.upcoming_events["trial_end"] == 7
        assert summary.next_renewal_at is None

    async def test_past_due_summary(self, service, create_subscription, drive):
        await create_subscription()
        await drive("sub-1", "payment_succeeded", "payment_failed")

        summary = await service.get_lifecycle_summary("store-1")

        assert summary.in_grace_period
        assert summary.payment_overdue
        assert not summary.auto_renews
        assert summary.retry_in_days == pytest.approx(7.5)

    async def test_unknown_store(self, service):
        assert await service.get_lifecycle_summary("nobody") is None


class TestWrites:
    """Test payment, cancellation and plan change delegation."""

    async def test_record_payment_uses_retry_triggers_when_past_due(self, service, create_subscription, drive, store):
        await create_subscription()
        await drive("sub-1", "payment_succeeded")

        failed = await service.record_payment("sub-1", succeeded=False, reason="card_declined")
        retried = await service.record_payment("sub-1", succeeded=False, attempt_count=2)

        assert failed.new_status == SubscriptionStatus.PAST_DUE
        assert retried.new_status == SubscriptionStatus.UNPAID
        triggers = [r["trigger"] for r in store.rows("subscription_transitions")]
        assert triggers[-2:] == [SubscriptionTrigger.PAYMENT_FAILED.value, SubscriptionTrigger.PAYMENT_RETRY_FAILED.value]

        recovered = await service.record_payment("sub-1", succeeded=True, amount=4900)
        assert recovered.new_status == SubscriptionStatus.ACTIVE

    async def test_change_plan(self, service, create_subscription, drive):
        await create_subscription()
        await drive("sub-1", "payment_succeeded")

        result = await service.change_plan("sub-1", "pro", user_id="user-1")

        assert result.success
        details = await service.get_subscription_by_id("sub-1")
        assert details.plan_type == PlanType.PRO
        assert details.plan_history[-1]["to"] == "pro"

    async def test_cancel_records_reason(self, service, create_subscription):
        await create_subscription()

        result = await service.cancel_subscription("sub-1", reason="too_expensive")

        assert result.success
        details = await service.get_subscription_by_id("sub-1")
        assert not details.is_active
        assert details.canceled_reason == "too_expensive"

    async def test_checkout_without_gateway_fails(self, service):
        session = BillingSession(user_id="user-1", store_id="store-1", email="a@b.c")
        with pytest.raises(AppError) as exc_info:
            await service.create_checkout_session(session, "price_pro", "store-1")
        assert exc_info.value.code == ErrorCode.SERVER_INTERNAL_ERROR
