"""Reconciliation between the payment processor and local subscription state.

Processor state reaches us two ways: an explicit ``reconcile`` that pulls the
processor's view of one subscription, and pushed webhook deliveries. Both end
in state machine transitions; neither writes a status directly.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from storefront_billing.errors import AppError, ErrorCategory, ErrorCode, validation_error
from storefront_billing.logging_config import get_logger
from storefront_billing.models.subscription import SubscriptionRecord, SubscriptionStatus
from storefront_billing.models.transitions import (
    SubscriptionTrigger,
    TransitionResult,
    payment_trigger,
    transition_path,
)
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.services.billing_gateway import (
    BillingGateway,
    BillingSession,
    GatewaySubscriptionSnapshot,
    snapshot_from_stripe,
)
from storefront_billing.services.cache import SubscriptionCacheManager
from storefront_billing.services.state_machine import (
    BILLING_TABLE,
    SUBSCRIPTIONS_TABLE,
    SubscriptionStateMachine,
)
from storefront_billing.state_logger import log_payment_attempt
from storefront_billing.utils.clock import to_iso, utc_now

logger = get_logger(__name__)

PROCESSED_WEBHOOKS_TABLE = "processed_webhook_events"

SUBSCRIPTION_EVENTS = frozenset(
    {"customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"}
)
INVOICE_EVENTS = frozenset({"invoice.payment_succeeded", "invoice.payment_failed"})


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery."""

    event_id: str
    event_type: str
    processed: bool = False
    duplicate: bool = False
    subscription_id: Optional[str] = None
    transitions: list[TransitionResult] = Field(default_factory=list)
    message: Optional[str] = None


class BillingSync:
    """Drives local subscriptions toward the processor's view.

    Args:
        store: Data store holding the subscription tables
        state_machine: Applies the resulting transitions
        gateway: Billing gateway used by ``reconcile``
        cache: Optional cache invalidated after mirrored fields change
    """

    def __init__(
        self,
        store: DataStore,
        state_machine: SubscriptionStateMachine,
        gateway: BillingGateway,
        cache: Optional[SubscriptionCacheManager] = None,
    ):
        self._store = store
        self._state_machine = state_machine
        self._gateway = gateway
        self._cache = cache

    async def reconcile(
        self, subscription_id: str, session: BillingSession
    ) -> Optional[list[TransitionResult]]:
        """Align a subscription with the processor.

        Returns:
            None when the local status already matches the processor's,
            otherwise the results of the transitions applied (stopping at the
            first failure)

        Raises:
            AppError: Unknown subscription, no processor reference, gateway
                failure, or a processor status the local table cannot reach
        """
        row = await self._store.select_one(SUBSCRIPTIONS_TABLE, {"id": subscription_id})
        if row is None:
            raise validation_error(
                ErrorCode.VALIDATION_ENTITY_NOT_FOUND,
                f"Subscription not found: {subscription_id}",
                subscription_id=subscription_id,
            )
        record = SubscriptionRecord.from_row(row)
        if not record.billing_reference:
            raise validation_error(
                ErrorCode.VALIDATION_REQUIRED_FIELD,
                "Subscription has no processor reference",
                subscription_id=subscription_id,
            )

        snapshot = await self._gateway.fetch_subscription_snapshot(session, record.billing_reference)
        await self._mirror(record, snapshot)
        return await self._converge(record, snapshot.status, {"source": "reconcile", "user_id": session.user_id})

    async def handle_webhook(self, event_id: str, event_type: str, payload: dict[str, Any]) -> WebhookResult:
        """Apply one processor webhook. Deliveries with a known ``event_id`` are no-ops."""
        result = WebhookResult(event_id=event_id, event_type=event_type)
        if await self._store.select_one(PROCESSED_WEBHOOKS_TABLE, {"event_id": event_id}):
            logger.info("webhook_duplicate_skipped", event_id=event_id, event_type=event_type)
            result.duplicate = True
            return result

        if event_type in SUBSCRIPTION_EVENTS:
            await self._handle_subscription_event(event_type, payload, result)
        elif event_type in INVOICE_EVENTS:
            await self._handle_invoice_event(event_type, payload, result)
        else:
            logger.info("webhook_ignored", event_id=event_id, event_type=event_type)
            result.message = "ignored"
            return result

        try:
            await self._store.insert(
                PROCESSED_WEBHOOKS_TABLE,
                [{"event_id": event_id, "event_type": event_type, "processed_at": to_iso(utc_now())}],
            )
        except AppError as e:
            logger.warning("webhook_record_failed", event_id=event_id, error=e.message)

        logger.info(
            "webhook_processed",
            event_id=event_id,
            event_type=event_type,
            subscription_id=result.subscription_id,
            transitions=len(result.transitions),
        )
        return result

    async def _handle_subscription_event(
        self, event_type: str, payload: dict[str, Any], result: WebhookResult
    ) -> None:
        snapshot = snapshot_from_stripe(payload)
        record = await self._find_subscription(snapshot.external_ref, payload.get("metadata") or {})
        if record is None:
            result.message = "unknown subscription"
            logger.warning("webhook_subscription_unknown", event_id=result.event_id, external_ref=snapshot.external_ref)
            return

        result.subscription_id = record.id
        await self._mirror(record, snapshot)
        target = "canceled" if event_type == "customer.subscription.deleted" else snapshot.status
        metadata = {"source": "webhook", "event_id": result.event_id}
        if event_type == "customer.subscription.deleted":
            metadata["reason"] = "processor_deleted"
        transitions = await self._converge(record, target, metadata)
        result.transitions = transitions or []
        result.processed = True

    async def _handle_invoice_event(
        self, event_type: str, payload: dict[str, Any], result: WebhookResult
    ) -> None:
        external_ref = _invoice_subscription(payload)
        record = await self._find_subscription(external_ref, {}) if external_ref else None
        if record is None:
            result.message = "unknown subscription"
            logger.warning("webhook_subscription_unknown", event_id=result.event_id, external_ref=external_ref)
            return

        result.subscription_id = record.id
        succeeded = event_type == "invoice.payment_succeeded"
        status = await self._state_machine.get_current_status(record.id)
        trigger = payment_trigger(status, succeeded)

        metadata: dict[str, Any] = {"source": "webhook", "event_id": result.event_id}
        amount = payload.get("amount_paid") if succeeded else payload.get("amount_due")
        if amount is not None:
            metadata["amount"] = amount
        if not succeeded:
            metadata["attempt_count"] = int(payload.get("attempt_count") or 1)
            metadata["reason"] = _failure_reason(payload)

        log_payment_attempt(
            record.id,
            succeeded,
            amount=amount,
            currency=payload.get("currency"),
            reason=metadata.get("reason"),
            store_id=record.store_id,
            user_id=record.user_id,
        )

        # A first failed attempt on a past_due subscription was already applied by
        # the subscription.updated delivery for the same renewal.
        if not succeeded and status == SubscriptionStatus.PAST_DUE and metadata["attempt_count"] <= 1:
            result.message = "payment failure already applied"
            result.processed = True
            return

        if status is not None and not self._state_machine.can_transition(status, trigger):
            result.message = f"payment ignored in status {status.value}"
            result.processed = True
            return

        result.transitions = [await self._state_machine.transition(record.id, trigger, metadata)]
        result.processed = True

    async def _converge(
        self, record: SubscriptionRecord, processor_status: str, metadata: dict[str, Any]
    ) -> Optional[list[TransitionResult]]:
        try:
            target = SubscriptionStatus(processor_status)
        except ValueError:
            logger.warning("processor_status_unmapped", subscription_id=record.id, status=processor_status)
            return None

        current = await self._state_machine.get_current_status(record.id) or record.status
        path = transition_path(current, target)
        if path is None:
            raise AppError(
                ErrorCode.VALIDATION_INVALID_TRANSITION,
                f"Cannot move from '{current.value}' to processor status '{target.value}'",
                ErrorCategory.VALIDATION,
                details={"subscription_id": record.id},
            )
        if not path:
            logger.debug("subscription_in_sync", subscription_id=record.id, status=current.value)
            return None

        results: list[TransitionResult] = []
        for trigger in path:
            step_metadata = dict(metadata)
            if trigger in (SubscriptionTrigger.MANUAL_CANCEL, SubscriptionTrigger.AUTO_CANCEL):
                step_metadata.setdefault("reason", "processor_canceled")
            outcome = await self._state_machine.transition(record.id, trigger, step_metadata)
            results.append(outcome)
            if not outcome.success:
                break
        logger.info(
            "subscription_reconciled",
            subscription_id=record.id,
            from_status=current.value,
            to_status=target.value,
            steps=[t.value for t in path],
            applied=sum(1 for r in results if r.success),
        )
        return results

    async def _mirror(self, record: SubscriptionRecord, snapshot: GatewaySubscriptionSnapshot) -> None:
        await self._store.upsert(
            BILLING_TABLE,
            [
                {
                    "subscription_id": record.id,
                    "billing_reference": snapshot.external_ref,
                    "customer_id": snapshot.customer_id,
                    "price_ref": snapshot.price_ref,
                    "current_period_start": to_iso(snapshot.current_period_start),
                    "current_period_end": to_iso(snapshot.current_period_end),
                    "cancel_at_period_end": snapshot.cancel_at_period_end,
                    "canceled_at": to_iso(snapshot.canceled_at),
                    "trial_end": to_iso(snapshot.trial_end),
                    "updated_at": to_iso(utc_now()),
                }
            ],
            on_conflict="subscription_id",
        )
        if self._cache is not None:
            self._cache.invalidate(record.id, record.store_id)

    async def _find_subscription(
        self, external_ref: str, metadata: dict[str, Any]
    ) -> Optional[SubscriptionRecord]:
        """Local subscription for a processor reference, linking it by store on first sight."""
        row = await self._store.select_one(SUBSCRIPTIONS_TABLE, {"billing_reference": external_ref})
        if row is not None:
            return SubscriptionRecord.from_row(row)

        store_id = metadata.get("store_id")
        if not store_id:
            return None
        linked = await self._store.update(
            SUBSCRIPTIONS_TABLE,
            {"billing_reference": external_ref, "updated_at": to_iso(utc_now())},
            {"store_id": store_id},
        )
        if not linked:
            return None
        logger.info("processor_subscription_linked", store_id=store_id, external_ref=external_ref)
        return SubscriptionRecord.from_row(linked[0])


def _invoice_subscription(invoice: dict[str, Any]) -> Optional[str]:
    reference = invoice.get("subscription")
    if reference is None:
        # Newer API versions nest the subscription under parent.subscription_details.
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        reference = details.get("subscription")
    if isinstance(reference, dict):
        reference = reference.get("id")
    return reference


def _failure_reason(invoice: dict[str, Any]) -> str:
    last_error = (invoice.get("last_finalization_error") or {}).get("code")
    return last_error or invoice.get("billing_reason") or "unknown"
