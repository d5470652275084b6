"""Subscription lifecycle API.

Implements:
- GET  /stores/{store_id}/subscription - Current subscription of a store
- POST /stores/{store_id}/trial - Start the automatic trial
- GET  /stores/{store_id}/features/{feature} - Feature gate
- GET  /stores/{store_id}/trial-ending-soon - Trial warning check
- GET  /stores/{store_id}/lifecycle - Trial, grace and renewal position
- POST /subscriptions/{subscription_id}/transitions - Apply a trigger
- GET  /subscriptions/{subscription_id}/events - Lifecycle event history
- GET  /subscriptions/{subscription_id}/state - Projected state (optionally as of a version)
- POST /subscriptions/{subscription_id}/reconcile - Pull the processor's view
- POST /webhooks/billing - Processor webhook delivery
- GET  /plans - Plan capability table
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from storefront_billing.errors import ErrorCode
from storefront_billing.logging_config import get_logger
from storefront_billing.models import PlanCapabilities, ProjectedState, SubscriptionDetails, TransitionResult
from storefront_billing.models.api_request import (
    CreateTrialRequest,
    CreateTrialResponse,
    FeatureAvailabilityResponse,
    LifecycleSummaryResponse,
    ReconcileRequest,
    TransitionRequest,
    TrialEndingSoonResponse,
    WebhookRequest,
)
from storefront_billing.services.billing_gateway import BillingSession
from storefront_billing.services.billing_sync import WebhookResult
from storefront_billing.services.container import BillingServices

logger = get_logger(__name__)
router = APIRouter(tags=["Subscriptions"])

# Failure code -> HTTP status for unsuccessful transitions
_TRANSITION_STATUS = {
    ErrorCode.VALIDATION_ENTITY_NOT_FOUND.value: 404,
    ErrorCode.VALIDATION_INVALID_TRANSITION.value: 409,
    ErrorCode.VALIDATION_REQUIRED_FIELD.value: 422,
}


def get_services(request: Request) -> BillingServices:
    return request.app.state.services


@router.get(
    "/stores/{store_id}/subscription",
    response_model=SubscriptionDetails,
    summary="Get store subscription",
)
async def get_store_subscription(store_id: str, request: Request) -> SubscriptionDetails:
    """Current subscription of a store, with days-until fields computed now.

    Raises:
        404: The store has no subscription
    """
    subscription = await get_services(request).subscriptions.get_subscription_by_store(store_id)
    if subscription is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "Subscription not found", "message": f"Store '{store_id}' has no subscription"},
        )
    return subscription


@router.post(
    "/stores/{store_id}/trial",
    response_model=CreateTrialResponse,
    status_code=201,
    summary="Start trial",
)
async def create_trial(store_id: str, body: CreateTrialRequest, request: Request) -> CreateTrialResponse:
    """Start the automatic trial for a store.

    Raises:
        409: The store already has a subscription
        400: The trial could not be created
    """
    logger.info("create_trial_request", store_id=store_id, user_id=body.user_id)
    result = await get_services(request).subscriptions.create_trial_subscription(body.user_id, store_id)
    if not result.success:
        status_code = 409 if result.error == "already exists" else 400
        raise HTTPException(
            status_code=status_code,
            detail={"error": "Trial not created", "message": result.error},
        )
    return result


@router.get(
    "/stores/{store_id}/features/{feature}",
    response_model=FeatureAvailabilityResponse,
    summary="Check feature availability",
)
async def get_feature_availability(store_id: str, feature: str, request: Request) -> FeatureAvailabilityResponse:
    available = await get_services(request).subscriptions.can_store_use_feature(store_id, feature)
    return FeatureAvailabilityResponse(store_id=store_id, feature=feature, available=available)


@router.get(
    "/stores/{store_id}/trial-ending-soon",
    response_model=TrialEndingSoonResponse,
    summary="Check whether the trial ends soon",
)
async def get_trial_ending_soon(
    store_id: str,
    request: Request,
    threshold_days: Optional[int] = Query(None, ge=0, description="Days before trial end"),
) -> TrialEndingSoonResponse:
    services = get_services(request)
    threshold = (
        services.settings.subscription.trial_ending_threshold_days if threshold_days is None else threshold_days
    )
    ending_soon = await services.subscriptions.is_trial_ending_soon(store_id, threshold)
    return TrialEndingSoonResponse(store_id=store_id, threshold_days=threshold, ending_soon=ending_soon)


@router.get(
    "/stores/{store_id}/lifecycle",
    response_model=LifecycleSummaryResponse,
    summary="Lifecycle position of the store subscription",
)
async def get_lifecycle(store_id: str, request: Request) -> LifecycleSummaryResponse:
    summary = await get_services(request).subscriptions.get_lifecycle_summary(store_id)
    if summary is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "Subscription not found", "message": f"Store '{store_id}' has no subscription"},
        )
    return summary


@router.post(
    "/subscriptions/{subscription_id}/transitions",
    response_model=TransitionResult,
    summary="Apply a transition trigger",
)
async def post_transition(subscription_id: str, body: TransitionRequest, request: Request) -> TransitionResult:
    """Apply ``trigger`` to a subscription.

    Raises:
        404: Subscription not found
        409: Trigger not allowed from the current status
        422: Missing trigger metadata (e.g. new_plan_type)
        500: The transition could not be persisted
    """
    logger.info("transition_request", subscription_id=subscription_id, trigger=body.trigger.value)
    result = await get_services(request).subscriptions.transition(subscription_id, body.trigger, body.metadata)
    if not result.success:
        raise HTTPException(
            status_code=_TRANSITION_STATUS.get(result.error_code, 500),
            detail={
                "error": result.error_code,
                "message": result.error,
                "current_status": result.previous_status.value if result.previous_status else None,
            },
        )
    return result


@router.get("/subscriptions/{subscription_id}/events", summary="List lifecycle events")
async def get_events(
    subscription_id: str,
    request: Request,
    from_version: Optional[int] = Query(None, ge=1),
    to_version: Optional[int] = Query(None, ge=1),
) -> list[dict[str, Any]]:
    events = await get_services(request).subscriptions.get_events(subscription_id, from_version, to_version)
    return [event.model_dump(mode="json") for event in events]


@router.get(
    "/subscriptions/{subscription_id}/state",
    response_model=ProjectedState,
    summary="Projected subscription state",
)
async def get_state(
    subscription_id: str,
    request: Request,
    to_version: Optional[int] = Query(None, ge=1, description="Fold only events up to this version"),
) -> ProjectedState:
    state = await get_services(request).subscriptions.get_state(subscription_id, to_version)
    if state is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "No events", "message": f"Subscription '{subscription_id}' has no lifecycle events"},
        )
    return state


@router.post(
    "/subscriptions/{subscription_id}/reconcile",
    response_model=list[TransitionResult],
    summary="Reconcile with the payment processor",
)
async def reconcile(subscription_id: str, body: ReconcileRequest, request: Request) -> list[TransitionResult]:
    """Pull the processor's view and apply the transitions needed to match it.

    An empty list means the subscription was already in sync.
    """
    session = BillingSession(user_id=body.user_id, customer_id=body.customer_id)
    results = await get_services(request).billing_sync.reconcile(subscription_id, session)
    return results or []


@router.post("/webhooks/billing", response_model=WebhookResult, summary="Processor webhook")
async def billing_webhook(body: WebhookRequest, request: Request) -> WebhookResult:
    logger.info("billing_webhook_received", event_id=body.id, event_type=body.type)
    return await get_services(request).billing_sync.handle_webhook(body.id, body.type, body.data)


@router.get("/plans", response_model=list[PlanCapabilities], summary="List plans")
async def list_plans(request: Request) -> list[PlanCapabilities]:
    return get_services(request).plans.get_all()
