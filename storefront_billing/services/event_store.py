"""Event-sourced subscription history.

``subscription_events`` is the append-only source of truth. Every append
recomputes the subscription's row in ``subscription_projections`` by replaying
all of its events; that row is a cache of the fold and can be rebuilt at any
time with ``rebuild_snapshot``.

Versions are assigned by read-then-increment. Appends for one subscription are
serialized inside this process; the unique ``(subscription_id, version)`` key
on the events table rejects a racing append from another process instead of
silently duplicating a version.
"""

import asyncio
from typing import Any, Optional, Union

from storefront_billing.logging_config import get_logger
from storefront_billing.models.events import (
    CanceledPayload,
    CreatedPayload,
    EventPayload,
    LifecycleEvent,
    LifecycleEventType,
    OpaquePayload,
    PaymentFailedPayload,
    PaymentSucceededPayload,
    PlanChangedPayload,
    ProjectedState,
    TrialEndedPayload,
    TrialStartedPayload,
    UpdatedPayload,
    parse_payload,
)
from storefront_billing.models.subscription import is_active_status
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.state_logger import log_subscription_event
from storefront_billing.utils.clock import to_iso, utc_now
from storefront_billing.utils.ids import new_id
from storefront_billing.utils.locks import KeyedLock

logger = get_logger(__name__)

EVENTS_TABLE = "subscription_events"
PROJECTIONS_TABLE = "subscription_projections"


def initial_state(subscription_id: str, store_id: str) -> ProjectedState:
    """State before any event: inactive, free, not active, version 0."""
    return ProjectedState(subscription_id=subscription_id, store_id=store_id)


def apply_event(state: ProjectedState, event: LifecycleEvent) -> ProjectedState:
    """Fold one event into ``state``. Pure; returns a new state.

    Unknown event types change nothing except version and ``updated_at``.
    """
    payload = event.payload
    status = state.status
    plan_type = state.plan_type
    is_active = state.is_active
    created_at = state.created_at
    metadata: dict[str, Any] = dict(state.metadata)
    stamp = to_iso(event.timestamp)

    if isinstance(payload, CreatedPayload):
        status = payload.status or "trialing"
        is_active = is_active_status(status)
        created_at = event.timestamp
        if payload.plan_type:
            plan_type = payload.plan_type
        for key in ("plan_name", "price", "currency", "interval"):
            value = getattr(payload, key)
            if value is not None:
                metadata[key] = value

    elif isinstance(payload, UpdatedPayload):
        if payload.status is not None:
            status = payload.status
        if payload.is_active is not None:
            is_active = payload.is_active
        metadata.update(payload.metadata)

    elif isinstance(payload, CanceledPayload):
        status = "canceled"
        is_active = False
        metadata["canceled_at"] = to_iso(payload.canceled_at) or stamp
        metadata["cancel_reason"] = payload.reason or "user_request"

    elif isinstance(payload, PaymentSucceededPayload):
        if status in ("past_due", "unpaid"):
            status = "active"
            is_active = True
        metadata["last_payment_at"] = to_iso(payload.paid_at) or stamp
        if payload.amount is not None:
            metadata["payment_amount"] = payload.amount
        if payload.next_payment_at is not None:
            metadata["next_payment_at"] = to_iso(payload.next_payment_at)

    elif isinstance(payload, PaymentFailedPayload):
        if status == "active":
            status = "past_due"
        elif status == "past_due" and payload.attempt_count > 1:
            status = "unpaid"
            is_active = False
        metadata["payment_attempts"] = int(metadata.get("payment_attempts", 0)) + 1
        metadata["last_failed_payment_at"] = to_iso(payload.failed_at) or stamp
        metadata["last_failure_reason"] = payload.reason or "unknown"

    elif isinstance(payload, TrialStartedPayload):
        status = "trialing"
        is_active = True
        metadata["trial_started"] = stamp
        if payload.trial_ends_at is not None:
            metadata["trial_ends_at"] = to_iso(payload.trial_ends_at)

    elif isinstance(payload, TrialEndedPayload):
        if status == "trialing":
            status = "active" if payload.payment_succeeded else "incomplete"
            is_active = payload.payment_succeeded
        metadata["trial_ended"] = stamp

    elif isinstance(payload, PlanChangedPayload):
        history = list(metadata.get("plan_history", []))
        history.append({"from": plan_type, "to": payload.new_plan_type, "changed_at": stamp})
        metadata["plan_history"] = history
        plan_type = payload.new_plan_type
        for key in ("plan_name", "price", "currency"):
            value = getattr(payload, key)
            if value is not None:
                metadata[key] = value

    elif isinstance(payload, OpaquePayload):
        pass

    return ProjectedState(
        subscription_id=state.subscription_id,
        store_id=state.store_id,
        status=status,
        plan_type=plan_type,
        is_active=is_active,
        created_at=created_at,
        updated_at=event.timestamp,
        metadata=metadata,
        version=event.version,
    )


def fold_events(events: list[LifecycleEvent]) -> Optional[ProjectedState]:
    """Fold an ordered event list; None when the list is empty."""
    if not events:
        return None
    state = initial_state(events[0].subscription_id, events[0].store_id)
    for event in events:
        state = apply_event(state, event)
    return state


class SubscriptionEventStore:
    """Append-only lifecycle log with a synchronously maintained snapshot table.

    Args:
        store: Data store holding the events and projections tables
        dispatcher: Optional publisher notified of every appended event
    """

    def __init__(
        self,
        store: DataStore,
        dispatcher: Optional[Any] = None,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._locks = KeyedLock()

    async def current_version(self, subscription_id: str) -> int:
        """Highest stored version for the subscription, 0 if none."""
        rows = await self._store.select(
            EVENTS_TABLE,
            match={"subscription_id": subscription_id},
            order_by="version",
            descending=True,
            limit=1,
        )
        return int(rows[0]["version"]) if rows else 0

    async def append_event(
        self,
        subscription_id: str,
        store_id: str,
        user_id: Optional[str],
        event_type: Union[LifecycleEventType, str],
        payload: Union[EventPayload, dict[str, Any], None] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LifecycleEvent:
        """Append an event and refresh the subscription's snapshot.

        Args:
            subscription_id: Subscription the event belongs to
            store_id: Owning store
            user_id: Acting user
            event_type: Lifecycle event type
            payload: Typed payload or its plain-dict form
            metadata: Free-form metadata stored alongside the event

        Returns:
            The stored event; ``version`` is the previous maximum plus one

        Raises:
            AppError: The event row could not be inserted
            ValueError: A typed payload does not match ``event_type``
        """
        type_value = event_type.value if isinstance(event_type, LifecycleEventType) else str(event_type)
        if payload is None or isinstance(payload, dict):
            typed_payload = parse_payload(type_value, payload)
        else:
            typed_payload = payload
            if typed_payload.event_type != type_value:
                raise ValueError(
                    f"Payload for '{typed_payload.event_type}' cannot be stored as '{type_value}'"
                )

        async with self._locks.hold(subscription_id):
            version = await self.current_version(subscription_id) + 1
            event = LifecycleEvent(
                id=new_id(),
                subscription_id=subscription_id,
                store_id=store_id,
                user_id=user_id,
                event_type=type_value,
                version=version,
                timestamp=utc_now(),
                payload=typed_payload,
                metadata=metadata or {},
            )
            await self._store.insert(EVENTS_TABLE, [event.to_row()])
            log_subscription_event(subscription_id, type_value, version, store_id=store_id, user_id=user_id)

            try:
                await self._project(subscription_id)
            except Exception as e:
                logger.warning(
                    "snapshot_projection_failed",
                    subscription_id=subscription_id,
                    version=version,
                    error=str(e),
                    error_type=type(e).__name__,
                    repair="rebuild_snapshot",
                )

        await self._publish(event)
        return event

    async def get_events(
        self,
        subscription_id: str,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
    ) -> list[LifecycleEvent]:
        """Events in ascending version order; bounds are inclusive."""
        rows = await self._store.select(
            EVENTS_TABLE,
            match={"subscription_id": subscription_id},
            order_by="version",
        )
        events = [LifecycleEvent.from_row(row) for row in rows]
        events.sort(key=lambda e: e.version)
        return [
            e
            for e in events
            if (from_version is None or e.version >= from_version)
            and (to_version is None or e.version <= to_version)
        ]

    async def reconstruct_state(
        self, subscription_id: str, to_version: Optional[int] = None
    ) -> Optional[ProjectedState]:
        """Fold events 1..to_version (all when omitted); None if there are none."""
        events = await self.get_events(subscription_id, to_version=to_version)
        return fold_events(events)

    async def get_snapshot(self, subscription_id: str) -> Optional[ProjectedState]:
        """Denormalized projection row, or None."""
        row = await self._store.select_one(PROJECTIONS_TABLE, {"subscription_id": subscription_id})
        return ProjectedState.from_row(row) if row else None

    async def get_snapshot_by_store(self, store_id: str) -> Optional[ProjectedState]:
        row = await self._store.select_one(PROJECTIONS_TABLE, {"store_id": store_id})
        return ProjectedState.from_row(row) if row else None

    async def rebuild_snapshot(self, subscription_id: str) -> Optional[ProjectedState]:
        """Replay the full history and overwrite the projection row."""
        async with self._locks.hold(subscription_id):
            state = await self._project(subscription_id)
        logger.info(
            "snapshot_rebuilt",
            subscription_id=subscription_id,
            version=state.version if state else 0,
        )
        return state

    async def _project(self, subscription_id: str) -> Optional[ProjectedState]:
        state = await self.reconstruct_state(subscription_id)
        if state is None:
            return None
        await self._store.upsert(PROJECTIONS_TABLE, [state.to_row()], on_conflict="subscription_id")
        return state

    async def _publish(self, event: LifecycleEvent) -> None:
        if self._dispatcher is None or not self._dispatcher.is_enabled():
            return
        await asyncio.to_thread(self._dispatcher.publish_lifecycle_event, event)
