"""Subscription service - the application-facing entry point.

Reads go cache -> data store; the cached value never carries the
``days_until_*`` fields, which are recomputed from the clock on every read.
Every status change is delegated to the state machine.
"""

import math
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional, Union

from storefront_billing.errors import AppError
from storefront_billing.logging_config import get_logger
from storefront_billing.metrics import BillingMetrics
from storefront_billing.models.api_request import CreateTrialResponse, LifecycleSummaryResponse
from storefront_billing.models.events import (
    LifecycleEvent,
    LifecycleEventType,
    ProjectedState,
    TrialStartedPayload,
)
from storefront_billing.models.plan import PlanCapabilities, PlanType, plan_allows, plan_limits
from storefront_billing.models.settings import SubscriptionConfig
from storefront_billing.models.subscription import (
    SubscriptionDetails,
    SubscriptionRecord,
    SubscriptionStatus,
)
from storefront_billing.models.transitions import SubscriptionTrigger, TransitionResult, payment_trigger
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.repositories.plan_repository import PlanRepository
from storefront_billing.services.billing_gateway import (
    BillingGateway,
    BillingSession,
    CheckoutSession,
    DisabledBillingGateway,
    PortalSession,
)
from storefront_billing.services.cache import SubscriptionCacheManager
from storefront_billing.services.event_store import SubscriptionEventStore
from storefront_billing.services.state_machine import (
    BILLING_TABLE,
    SUBSCRIPTIONS_TABLE,
    SubscriptionStateMachine,
)
from storefront_billing.utils import lifecycle
from storefront_billing.utils.billing_period import billing_period_to_timedelta
from storefront_billing.utils.clock import parse_datetime, utc_now
from storefront_billing.utils.ids import trial_subscription_id

logger = get_logger(__name__)

STORES_TABLE = "stores"


class SubscriptionService:
    """Façade over the state machine, event store, cache and billing gateway.

    Args:
        store: Data store holding the subscription tables
        state_machine: Authority for status changes
        event_store: Lifecycle event log and snapshots
        cache: Cache manager owned by this service
        plans: Plan capability repository
        gateway: Billing gateway for checkout/portal sessions
        config: Trial settings
        metrics: Optional metrics sink
        clock: Source of "now" for derived fields
    """

    def __init__(
        self,
        store: DataStore,
        state_machine: SubscriptionStateMachine,
        event_store: SubscriptionEventStore,
        cache: SubscriptionCacheManager,
        plans: Optional[PlanRepository] = None,
        gateway: Optional[BillingGateway] = None,
        config: Optional[SubscriptionConfig] = None,
        metrics: Optional[BillingMetrics] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._state_machine = state_machine
        self._event_store = event_store
        self._cache = cache
        self._plans = plans or PlanRepository()
        self._gateway = gateway or DisabledBillingGateway()
        self._config = config or SubscriptionConfig()
        self._metrics = metrics
        self._clock = clock

    @property
    def cache(self) -> SubscriptionCacheManager:
        return self._cache

    @property
    def plans(self) -> PlanRepository:
        return self._plans

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription_by_store(self, store_id: str) -> Optional[SubscriptionDetails]:
        """Subscription of a store, or None if it never had one."""
        details = self._cache.get_by_store(store_id)
        if details is None:
            row = await self._store.select_one(SUBSCRIPTIONS_TABLE, {"store_id": store_id})
            if row is not None:
                record = SubscriptionRecord.from_row(row)
                snapshot = await self._event_store.get_snapshot(record.id)
            else:
                record = None
                snapshot = await self._event_store.get_snapshot_by_store(store_id)
            details = await self._assemble(record, snapshot)
            if details is None:
                return None
            self._cache.put(details.store_id, details.id, details)
        return details.with_derived_fields(self._clock())

    get_subscription = get_subscription_by_store

    async def get_subscription_by_id(self, subscription_id: str) -> Optional[SubscriptionDetails]:
        details = self._cache.get_by_id(subscription_id)
        if details is None:
            row = await self._store.select_one(SUBSCRIPTIONS_TABLE, {"id": subscription_id})
            record = SubscriptionRecord.from_row(row) if row else None
            snapshot = await self._event_store.get_snapshot(subscription_id)
            details = await self._assemble(record, snapshot)
            if details is None:
                return None
            self._cache.put(details.store_id, details.id, details)
        return details.with_derived_fields(self._clock())

    async def _assemble(
        self, record: Optional[SubscriptionRecord], snapshot: Optional[ProjectedState]
    ) -> Optional[SubscriptionDetails]:
        """Merge the snapshot (status, plan, history) with the row and billing mirror."""
        if record is None and snapshot is None:
            return None

        subscription_id = record.id if record else snapshot.subscription_id
        mirror = await self._store.select_one(BILLING_TABLE, {"subscription_id": subscription_id}) or {}
        meta: dict[str, Any] = snapshot.metadata if snapshot else {}

        if snapshot is not None:
            status = SubscriptionStatus(snapshot.status)
            is_active = snapshot.is_active
            plan_type = _plan_type(snapshot.plan_type)
        else:
            status = record.status
            is_active = record.active
            plan_type = record.plan_type
        plan = self._plans.find_by_type(plan_type.value)

        trial_end = (record.trial_ends_at if record else None) or parse_datetime(meta.get("trial_ends_at"))
        period_end = parse_datetime(mirror.get("current_period_end")) or (
            record.next_payment_at if record else None
        ) or parse_datetime(meta.get("next_payment_at"))

        return SubscriptionDetails(
            id=subscription_id,
            store_id=record.store_id if record else snapshot.store_id,
            user_id=record.user_id if record else None,
            status=status,
            plan_type=plan_type,
            plan_name=meta.get("plan_name") or (record.plan_name if record else None) or (plan.name if plan else None),
            is_active=is_active,
            billing_reference=(record.billing_reference if record else None) or mirror.get("billing_reference"),
            created_at=(record.created_at if record else None) or (snapshot.created_at if snapshot else None),
            period_start=parse_datetime(mirror.get("current_period_start")),
            period_end=period_end,
            trial_end=trial_end,
            cancel_at_period_end=bool(mirror.get("cancel_at_period_end", False)),
            price=_first(meta.get("price"), record.amount if record else None, plan.price if plan else None, 0),
            currency=_first(meta.get("currency"), record.currency if record else None, "brl"),
            interval=meta.get("interval") or (plan.interval if plan else "month"),
            canceled_at=parse_datetime(mirror.get("canceled_at")) or parse_datetime(meta.get("canceled_at")),
            canceled_reason=meta.get("cancel_reason") or mirror.get("cancel_reason"),
            payment_attempts=int(meta.get("payment_attempts", 0)),
            plan_history=list(meta.get("plan_history", [])),
        )

    async def get_events(
        self,
        subscription_id: str,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
    ) -> list[LifecycleEvent]:
        return await self._event_store.get_events(subscription_id, from_version, to_version)

    async def get_state(self, subscription_id: str, to_version: Optional[int] = None) -> Optional[ProjectedState]:
        """Folded state; the snapshot when no version bound is given."""
        if to_version is None:
            snapshot = await self._event_store.get_snapshot(subscription_id)
            if snapshot is not None:
                return snapshot
        return await self._event_store.reconstruct_state(subscription_id, to_version)

    # ------------------------------------------------------------------
    # Feature gate
    # ------------------------------------------------------------------

    def is_feature_available(self, subscription: Optional[SubscriptionDetails], feature: str) -> bool:
        """Whether the subscription's plan unlocks ``feature``.

        No subscription, an inactive one, an unknown plan or an unknown
        feature name all answer False.
        """
        if subscription is None or not subscription.is_active:
            return False
        plan = self._plans.find_by_type(subscription.plan_type.value)
        if plan is None:
            return False
        return plan_allows(plan, feature)

    async def can_store_use_feature(self, store_id: str, feature: str) -> bool:
        subscription = await self.get_subscription_by_store(store_id)
        if subscription is None:
            return False
        cached = self._cache.get_feature(subscription.id, feature)
        if cached is not None:
            return cached
        available = self.is_feature_available(subscription, feature)
        self._cache.put_feature(subscription.id, feature, available)
        return available

    def get_plan_limits(self, subscription: Optional[SubscriptionDetails]) -> dict[str, object]:
        """Limits shown to the store owner; the free plan when there is no active subscription."""
        plan: Optional[PlanCapabilities] = None
        if subscription is not None and subscription.is_active:
            plan = self._plans.find_by_type(subscription.plan_type.value)
        return plan_limits(plan or self._plans.get_by_type(PlanType.FREE.value))

    async def is_trial_ending_soon(self, store_id: str, threshold_days: Optional[int] = None) -> bool:
        """True when the store is trialing and the trial ends within ``threshold_days``."""
        threshold = self._config.trial_ending_threshold_days if threshold_days is None else threshold_days
        subscription = await self.get_subscription_by_store(store_id)
        if subscription is None or subscription.status != SubscriptionStatus.TRIALING:
            return False
        if subscription.trial_end is None:
            return False
        # Unclamped: a trial that already ended is not "ending soon".
        days_left = math.ceil((subscription.trial_end - self._clock()).total_seconds() / 86400)
        return 0 <= days_left <= threshold

    async def get_lifecycle_summary(self, store_id: str) -> Optional[LifecycleSummaryResponse]:
        """Trial, grace and renewal position of a store's subscription."""
        subscription = await self.get_subscription_by_store(store_id)
        if subscription is None:
            return None
        overdue = lifecycle.is_payment_overdue(subscription)
        return LifecycleSummaryResponse(
            store_id=store_id,
            subscription_id=subscription.id,
            status=subscription.status.value,
            in_trial=lifecycle.is_in_trial_period(subscription),
            in_grace_period=lifecycle.is_in_grace_period(subscription),
            payment_overdue=overdue,
            auto_renews=lifecycle.will_auto_renew(subscription),
            retry_in_days=(
                lifecycle.get_retry_period(subscription.status, subscription.payment_attempts) if overdue else None
            ),
            next_renewal_at=lifecycle.get_next_renewal_date(subscription),
            upcoming_events=lifecycle.get_upcoming_events(subscription),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def transition(
        self,
        subscription_id: str,
        trigger: Union[SubscriptionTrigger, str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        return await self._state_machine.transition(subscription_id, trigger, metadata)

    async def create_trial_subscription(self, user_id: str, store_id: str) -> CreateTrialResponse:
        """Start the automatic trial for a store.

        Refuses when the store already has a subscription. The state machine
        inserts the row and appends ``created``; this method then records
        ``trial_started`` and mirrors the plan onto the store.
        """
        if not user_id or not store_id:
            return CreateTrialResponse(success=False, error="user_id and store_id are required")

        existing = await self._store.select_one(SUBSCRIPTIONS_TABLE, {"store_id": store_id})
        if existing is not None:
            logger.info("trial_refused_existing_subscription", store_id=store_id, subscription_id=existing.get("id"))
            return CreateTrialResponse(success=False, error="already exists")

        now = self._clock()
        trial_ends_at = now + billing_period_to_timedelta(self._config.trial_period)
        plan = self._plans.get_by_type(self._config.trial_plan_type.value)
        subscription_id = trial_subscription_id(store_id, now)
        record = SubscriptionRecord(
            id=subscription_id,
            store_id=store_id,
            user_id=user_id,
            plan_type=plan.plan_type,
            plan_name=plan.name,
            plan_id=f"{plan.plan_type.value}_trial",
            status=SubscriptionStatus.INACTIVE,
            trial_ends_at=trial_ends_at,
            amount=self._config.trial_amount,
            currency=self._config.currency,
            created_at=now,
            metadata={"source": "automatic_trial"},
        )

        result = await self._state_machine.transition(
            subscription_id,
            SubscriptionTrigger.CREATE,
            {"user_id": user_id, "source": "automatic_trial", "interval": plan.interval},
            new_subscription=record,
        )
        if not result.success:
            logger.error("trial_creation_failed", store_id=store_id, user_id=user_id, error=result.error)
            return CreateTrialResponse(success=False, error=result.error)

        try:
            await self._event_store.append_event(
                subscription_id,
                store_id,
                user_id,
                LifecycleEventType.TRIAL_STARTED,
                TrialStartedPayload(trial_ends_at=trial_ends_at),
            )
        except AppError as e:
            logger.error("trial_started_event_failed", subscription_id=subscription_id, error=e.message)

        try:
            await self._store.update(STORES_TABLE, {"subscription_plan": plan.plan_type.value}, {"id": store_id})
        except AppError as e:
            logger.warning("store_plan_update_failed", store_id=store_id, error=e.message)

        self._cache.invalidate(subscription_id, store_id)
        if self._metrics:
            self._metrics.record_new_subscription(plan.plan_type.value)

        logger.info(
            "trial_subscription_created",
            subscription_id=subscription_id,
            store_id=store_id,
            user_id=user_id,
            trial_ends_at=trial_ends_at.isoformat(),
        )
        return CreateTrialResponse(success=True, subscription_id=subscription_id, trial_ends_at=trial_ends_at)

    async def cancel_subscription(
        self, subscription_id: str, reason: str = "user_request", user_id: Optional[str] = None
    ) -> TransitionResult:
        metadata: dict[str, Any] = {"reason": reason}
        if user_id:
            metadata["user_id"] = user_id
        return await self._state_machine.transition(subscription_id, SubscriptionTrigger.MANUAL_CANCEL, metadata)

    async def change_plan(
        self, subscription_id: str, new_plan_type: str, user_id: Optional[str] = None
    ) -> TransitionResult:
        metadata: dict[str, Any] = {"new_plan_type": new_plan_type}
        if user_id:
            metadata["user_id"] = user_id
        return await self._state_machine.transition(subscription_id, SubscriptionTrigger.PLAN_CHANGED, metadata)

    async def record_payment(
        self,
        subscription_id: str,
        succeeded: bool,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        attempt_count: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> TransitionResult:
        """Apply a payment outcome; past-due and unpaid subscriptions use the retry triggers."""
        status = await self._state_machine.get_current_status(subscription_id)
        trigger = payment_trigger(status, succeeded)

        metadata: dict[str, Any] = {}
        for key, value in (
            ("amount", amount),
            ("reason", reason),
            ("attempt_count", attempt_count),
            ("user_id", user_id),
        ):
            if value is not None:
                metadata[key] = value
        return await self._state_machine.transition(subscription_id, trigger, metadata)

    # ------------------------------------------------------------------
    # Billing gateway pass-through
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self, session: BillingSession, price_ref: str, store_id: str
    ) -> CheckoutSession:
        return await self._gateway.create_checkout_session(session, price_ref, store_id)

    async def create_portal_session(self, session: BillingSession) -> PortalSession:
        return await self._gateway.create_portal_session(session)


def _plan_type(value: str) -> PlanType:
    try:
        return PlanType(value)
    except ValueError:
        return PlanType.FREE


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None
