"""Subscription state machine.

The single authority on whether a subscription's status may change. A legal
transition is persisted as one transaction plan over three tables:

1. ``subscriptions``: status, derived ``active`` flag, ``updated_at`` (plus
   plan columns on a plan change; the row is inserted on ``create`` when the
   store has none yet)
2. ``billing_subscriptions``: mirrored processor status with the last transition
3. ``subscription_transitions``: append-only audit record

After the plan commits, a matching lifecycle event is appended to the event
store, the subscription's cache entries are invalidated and a user
notification is attempted. Failures after the commit are logged and never
undo the transition.
"""

from contextlib import nullcontext
from typing import Any, Optional, Union

from pydantic import ValidationError

from storefront_billing.errors import AppError, ErrorCode
from storefront_billing.logging_config import get_logger
from storefront_billing.metrics import BillingMetrics
from storefront_billing.models.events import (
    CanceledPayload,
    CreatedPayload,
    EventPayload,
    LifecycleEventType,
    PaymentFailedPayload,
    PaymentSucceededPayload,
    PlanChangedPayload,
    TrialEndedPayload,
    UpdatedPayload,
)
from storefront_billing.models.subscription import (
    SubscriptionRecord,
    SubscriptionStatus,
    is_active_status,
)
from storefront_billing.models.transitions import (
    SubscriptionTrigger,
    TransitionRecord,
    TransitionResult,
    TriggerMetadata,
    next_status,
)
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.repositories.plan_repository import PlanRepository
from storefront_billing.services.cache import SubscriptionCacheManager
from storefront_billing.services.event_store import SubscriptionEventStore
from storefront_billing.services.notification_sink import NotificationSink
from storefront_billing.services.transaction_manager import TransactionBuilder, TransactionManager
from storefront_billing.state_logger import log_state_transition, log_transition_rejected
from storefront_billing.utils.clock import to_iso, utc_now
from storefront_billing.utils.locks import KeyedLock

logger = get_logger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"
BILLING_TABLE = "billing_subscriptions"
TRANSITIONS_TABLE = "subscription_transitions"

_S = SubscriptionStatus
_T = SubscriptionTrigger

# (notification type, title, content)
_NOTIFICATION_TEXT: dict[str, tuple[str, str]] = {
    "payment_success": ("Payment confirmed", "Your payment went through and your subscription is active."),
    "subscription_reactivated": ("Subscription reactivated", "Welcome back! Your subscription is active again."),
    "trial_started": ("Trial started", "Your free trial has started. Enjoy every feature of your plan."),
    "payment_past_due": ("Payment overdue", "We could not charge your card. Update your payment method to keep access."),
    "payment_unpaid": ("Payment not received", "Your subscription is unpaid. Premium features are suspended until payment."),
    "subscription_canceled": ("Subscription canceled", "Your subscription was canceled."),
    "payment_incomplete": ("Payment required", "Complete your first payment to activate the subscription."),
    "subscription_expired": ("Subscription expired", "Your first payment failed and the subscription expired."),
}


def notification_for(previous: SubscriptionStatus, new: SubscriptionStatus) -> Optional[str]:
    """Notification type sent after moving from ``previous`` to ``new``."""
    if new == _S.ACTIVE:
        if previous == _S.CANCELED:
            return "subscription_reactivated"
        if previous in (_S.TRIALING, _S.INCOMPLETE, _S.PAST_DUE, _S.UNPAID):
            return "payment_success"
        return None
    return {
        _S.TRIALING: "trial_started",
        _S.PAST_DUE: "payment_past_due",
        _S.UNPAID: "payment_unpaid",
        _S.CANCELED: "subscription_canceled",
        _S.INCOMPLETE: "payment_incomplete",
        _S.INCOMPLETE_EXPIRED: "subscription_expired",
    }.get(new)


class SubscriptionStateMachine:
    """Validates and persists subscription status transitions.

    Args:
        store: Data store holding the subscription tables
        event_store: Lifecycle event log
        transaction_manager: Executes transition plans; built over ``store`` if omitted
        notifications: Optional user notification sink
        cache: Optional cache to invalidate after each transition
        plans: Plan capability repository used for plan changes
        metrics: Optional metrics sink
    """

    def __init__(
        self,
        store: DataStore,
        event_store: SubscriptionEventStore,
        transaction_manager: Optional[TransactionManager] = None,
        notifications: Optional[NotificationSink] = None,
        cache: Optional[SubscriptionCacheManager] = None,
        plans: Optional[PlanRepository] = None,
        metrics: Optional[BillingMetrics] = None,
    ):
        self._store = store
        self._event_store = event_store
        self._transactions = transaction_manager or TransactionManager(store, metrics=metrics)
        self._notifications = notifications
        self._cache = cache
        self._plans = plans or PlanRepository()
        self._metrics = metrics
        self._locks = KeyedLock()

    @staticmethod
    def can_transition(status: Union[SubscriptionStatus, str], trigger: Union[SubscriptionTrigger, str]) -> bool:
        """Whether ``(status, trigger)`` is in the transition table."""
        try:
            return next_status(SubscriptionStatus(status), SubscriptionTrigger(trigger)) is not None
        except ValueError:
            return False

    async def get_current_status(self, subscription_id: str) -> Optional[SubscriptionStatus]:
        """Current status from the subscription row, falling back to the snapshot."""
        status, _ = await self._load(subscription_id)
        return status

    async def _load(
        self, subscription_id: str
    ) -> tuple[Optional[SubscriptionStatus], Optional[SubscriptionRecord]]:
        row = await self._store.select_one(SUBSCRIPTIONS_TABLE, {"id": subscription_id})
        if row is not None:
            record = SubscriptionRecord.from_row(row)
            return record.status, record
        snapshot = await self._event_store.get_snapshot(subscription_id)
        if snapshot is not None:
            return SubscriptionStatus(snapshot.status), None
        return None, None

    async def transition(
        self,
        subscription_id: str,
        trigger: Union[SubscriptionTrigger, str],
        metadata: Optional[dict[str, Any]] = None,
        new_subscription: Optional[SubscriptionRecord] = None,
    ) -> TransitionResult:
        """Apply ``trigger`` to a subscription.

        Args:
            subscription_id: Subscription to transition
            trigger: Transition trigger
            metadata: Trigger details (``user_id``, ``reason``, ``new_plan_type``,
                ``attempt_count``, ``amount``...). Stored on the transition record.
            new_subscription: Row to insert when ``trigger`` is ``create`` and the
                subscription does not exist yet

        Returns:
            TransitionResult; on failure nothing was changed (or everything was compensated)
        """
        try:
            trigger = SubscriptionTrigger(trigger)
        except ValueError:
            return self._reject(subscription_id, None, trigger, ErrorCode.VALIDATION_INVALID_TRANSITION, f"Unknown trigger: {trigger}")

        try:
            metadata = TriggerMetadata.model_validate(metadata or {}).model_dump(mode="json", exclude_none=True)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            return self._reject(
                subscription_id, None, trigger, ErrorCode.VALIDATION_REQUIRED_FIELD,
                f"Invalid metadata for '{trigger.value}': {', '.join(fields) or 'metadata'}",
            )
        # Retry failures fold to unpaid only past the first attempt.
        if trigger == _T.PAYMENT_RETRY_FAILED and metadata.get("attempt_count", 2) < 2:
            return self._reject(
                subscription_id, None, trigger, ErrorCode.VALIDATION_REQUIRED_FIELD,
                "payment_retry_failed requires attempt_count greater than 1",
            )

        async with self._locks.hold(subscription_id):
            try:
                status, record = await self._load(subscription_id)
            except (AppError, ValueError) as e:
                logger.error("subscription_load_failed", subscription_id=subscription_id, error=str(e))
                return self._failure(ErrorCode.SERVER_DATABASE_ERROR, str(e))

            if status is None:
                if trigger != _T.CREATE or new_subscription is None:
                    return self._reject(
                        subscription_id, None, trigger, ErrorCode.VALIDATION_ENTITY_NOT_FOUND,
                        f"Subscription not found: {subscription_id}",
                    )
                status = _S.INACTIVE

            new_status = next_status(status, trigger)
            if new_status is None:
                return self._reject(
                    subscription_id, status, trigger, ErrorCode.VALIDATION_INVALID_TRANSITION,
                    f"Invalid transition from '{status.value}' via '{trigger.value}'",
                )

            if record is None:
                record = new_subscription
            if record is None:
                return self._reject(
                    subscription_id, status, trigger, ErrorCode.VALIDATION_ENTITY_NOT_FOUND,
                    f"Subscription row missing for {subscription_id}",
                )

            plan_values: dict[str, Any] = {}
            if trigger == _T.PLAN_CHANGED:
                plan = self._plans.find_by_type(metadata.get("new_plan_type", ""))
                if plan is None:
                    return self._reject(
                        subscription_id, status, trigger, ErrorCode.VALIDATION_REQUIRED_FIELD,
                        "plan_changed requires a known new_plan_type",
                    )
                plan_values = {
                    "plan_type": plan.plan_type.value,
                    "plan_name": plan.name,
                    "amount": plan.price,
                    "currency": plan.currency,
                }

            builder = self._build_plan(
                record, status, new_status, trigger, metadata, plan_values, insert_row=record is new_subscription
            )
            timer = self._metrics.time_operation("transition") if self._metrics else nullcontext()
            try:
                async with timer:
                    await self._transactions.execute(builder)
            except AppError as e:
                logger.error(
                    "subscription_transition_failed",
                    subscription_id=subscription_id,
                    from_status=status.value,
                    trigger=trigger.value,
                    error=e.message,
                    details=e.details,
                )
                if self._metrics:
                    self._metrics.record_transition_failure("transaction_failed")
                return self._failure(e.code, e.message, previous=status)

            await self._append_event(record, status, new_status, trigger, metadata, plan_values)

        log_state_transition(
            subscription_id,
            status,
            new_status,
            trigger,
            store_id=record.store_id,
            user_id=metadata.get("user_id") or record.user_id,
        )
        self._record_metrics(record, status, new_status, trigger, metadata)
        if self._cache is not None:
            self._cache.invalidate(subscription_id, record.store_id)
        await self._notify(record, status, new_status, metadata)

        return TransitionResult(success=True, previous_status=status, new_status=new_status)

    def _build_plan(
        self,
        record: SubscriptionRecord,
        status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        trigger: SubscriptionTrigger,
        metadata: dict[str, Any],
        plan_values: dict[str, Any],
        insert_row: bool,
    ) -> TransactionBuilder:
        now = to_iso(utc_now())
        active = is_active_status(new_status.value)
        builder = self._transactions.builder()

        if insert_row:
            row = record.model_copy(update={"status": new_status, "active": active}).to_row()
            row.update({"created_at": row.get("created_at") or now, "updated_at": now, **plan_values})
            builder = builder.insert(SUBSCRIPTIONS_TABLE, row)
        else:
            builder = builder.update(
                SUBSCRIPTIONS_TABLE,
                {"status": new_status.value, "active": active, "updated_at": now, **plan_values},
                {"id": record.id},
            )

        builder = builder.upsert(
            BILLING_TABLE,
            {
                "subscription_id": record.id,
                "billing_reference": record.billing_reference,
                "status": new_status.value,
                "updated_at": now,
                "metadata": {
                    "last_transition": {
                        "from": status.value,
                        "to": new_status.value,
                        "trigger": trigger.value,
                        "timestamp": now,
                    }
                },
            },
            on_conflict="subscription_id",
        )

        audit = TransitionRecord(
            subscription_id=record.id,
            from_status=status,
            to_status=new_status,
            trigger=trigger,
            metadata=metadata,
            created_at=utc_now(),
        )
        return builder.insert(TRANSITIONS_TABLE, audit.to_row())

    async def _append_event(
        self,
        record: SubscriptionRecord,
        status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        trigger: SubscriptionTrigger,
        metadata: dict[str, Any],
        plan_values: dict[str, Any],
    ) -> None:
        try:
            event_type, payload = lifecycle_event_for(record, status, new_status, trigger, metadata, plan_values)
            await self._event_store.append_event(
                record.id,
                record.store_id,
                metadata.get("user_id") or record.user_id,
                event_type,
                payload,
                metadata={"trigger": trigger.value, "from_status": status.value},
            )
        except Exception as e:
            # The transition is committed; the snapshot needs a rebuild from a later append.
            logger.error(
                "lifecycle_event_append_failed",
                subscription_id=record.id,
                trigger=trigger.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _notify(
        self,
        record: SubscriptionRecord,
        status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        metadata: dict[str, Any],
    ) -> None:
        notification_type = notification_for(status, new_status)
        user_id = metadata.get("user_id") or record.user_id
        if self._notifications is None or notification_type is None:
            return
        if not user_id:
            logger.debug("notification_skipped_no_user", subscription_id=record.id, notification_type=notification_type)
            return

        title, content = _NOTIFICATION_TEXT[notification_type]
        try:
            await self._notifications.create_notification(
                user_id,
                notification_type,
                title,
                content,
                {
                    "subscription_id": record.id,
                    "store_id": record.store_id,
                    "from_status": status.value,
                    "to_status": new_status.value,
                },
            )
        except Exception as e:
            logger.warning(
                "transition_notification_failed",
                subscription_id=record.id,
                notification_type=notification_type,
                error=str(e),
            )

    def _record_metrics(
        self,
        record: SubscriptionRecord,
        status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        trigger: SubscriptionTrigger,
        metadata: dict[str, Any],
    ) -> None:
        if self._metrics is None:
            return
        self._metrics.record_transition(status.value, new_status.value, trigger.value)
        if trigger in (_T.PAYMENT_SUCCEEDED, _T.PAYMENT_RETRY_SUCCEEDED):
            self._metrics.record_payment(True, plan_type=record.plan_type.value)
        elif trigger in (_T.PAYMENT_FAILED, _T.PAYMENT_RETRY_FAILED):
            self._metrics.record_payment(
                False, reason=str(metadata.get("reason", "unknown")), plan_type=record.plan_type.value
            )
        if new_status == _S.CANCELED:
            age_days = None
            if record.created_at is not None:
                age_days = (utc_now() - record.created_at).total_seconds() / 86400
            self._metrics.record_cancellation(
                str(metadata.get("reason", trigger.value)), record.plan_type.value, age_days
            )

    def _reject(
        self,
        subscription_id: str,
        status: Optional[SubscriptionStatus],
        trigger: Any,
        code: ErrorCode,
        message: str,
    ) -> TransitionResult:
        log_transition_rejected(subscription_id, status.value if status else None, trigger, message)
        if self._metrics:
            self._metrics.record_transition_failure(code.value.lower())
        return self._failure(code, message, previous=status)

    @staticmethod
    def _failure(
        code: ErrorCode, message: str, previous: Optional[SubscriptionStatus] = None
    ) -> TransitionResult:
        return TransitionResult(success=False, previous_status=previous, error=message, error_code=code.value)


def lifecycle_event_for(
    record: SubscriptionRecord,
    status: SubscriptionStatus,
    new_status: SubscriptionStatus,
    trigger: SubscriptionTrigger,
    metadata: dict[str, Any],
    plan_values: dict[str, Any],
) -> tuple[LifecycleEventType, EventPayload]:
    """Event recording a committed transition; folding it yields ``new_status``."""
    if trigger == _T.CREATE:
        return LifecycleEventType.CREATED, CreatedPayload(
            status=new_status.value,
            plan_type=record.plan_type.value,
            plan_name=record.plan_name,
            price=record.amount,
            currency=record.currency,
            interval=metadata.get("interval", "month"),
        )

    if trigger in (_T.MANUAL_CANCEL, _T.AUTO_CANCEL):
        default_reason = "user_request" if trigger == _T.MANUAL_CANCEL else "payment_failure"
        return LifecycleEventType.CANCELED, CanceledPayload(reason=metadata.get("reason") or default_reason)

    if trigger == _T.PLAN_CHANGED:
        return LifecycleEventType.PLAN_CHANGED, PlanChangedPayload(
            new_plan_type=plan_values["plan_type"],
            plan_name=plan_values.get("plan_name"),
            price=plan_values.get("amount"),
            currency=plan_values.get("currency"),
        )

    if trigger in (_T.PAYMENT_SUCCEEDED, _T.PAYMENT_RETRY_SUCCEEDED) and status in (_S.ACTIVE, _S.PAST_DUE, _S.UNPAID):
        return LifecycleEventType.PAYMENT_SUCCEEDED, PaymentSucceededPayload(
            amount=metadata.get("amount"),
            next_payment_at=metadata.get("next_payment_at"),
        )

    if trigger == _T.PAYMENT_FAILED and status == _S.ACTIVE:
        return LifecycleEventType.PAYMENT_FAILED, PaymentFailedPayload(
            attempt_count=int(metadata.get("attempt_count", 1)),
            reason=metadata.get("reason") or "unknown",
        )

    if trigger == _T.PAYMENT_RETRY_FAILED:
        return LifecycleEventType.PAYMENT_FAILED, PaymentFailedPayload(
            attempt_count=int(metadata.get("attempt_count", 2)),
            reason=metadata.get("reason") or "unknown",
        )

    if trigger == _T.TRIAL_ENDED:
        return LifecycleEventType.TRIAL_ENDED, TrialEndedPayload(payment_succeeded=False)

    return LifecycleEventType.UPDATED, UpdatedPayload(
        status=new_status.value,
        is_active=is_active_status(new_status.value),
    )
