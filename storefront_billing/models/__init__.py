"""Pydantic models for subscriptions, lifecycle events, plans and the API."""

# Plan capability table
from .plan import (
    DEFAULT_PLANS,
    FEATURE_FLAGS,
    PlanCapabilities,
    PlanType,
    plan_allows,
    plan_limits,
)

# Subscription models
from .subscription import (
    ACTIVE_STATUSES,
    SubscriptionDetails,
    SubscriptionRecord,
    SubscriptionStatus,
    is_active_status,
)

# Lifecycle events
from .events import (
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

# Transitions
from .transitions import (
    VALID_TRANSITIONS,
    SubscriptionTrigger,
    TransitionRecord,
    TransitionResult,
    TriggerMetadata,
    allowed_triggers,
    next_status,
    payment_trigger,
    transition_path,
)

# Configuration
from .settings import (
    BillingGatewayConfig,
    BillingSettings,
    CacheConfig,
    DataStoreConfig,
    PubSubConfig,
    SubscriptionConfig,
)

__all__ = [
    # Plans
    "DEFAULT_PLANS",
    "FEATURE_FLAGS",
    "PlanCapabilities",
    "PlanType",
    "plan_allows",
    "plan_limits",
    # Subscription
    "ACTIVE_STATUSES",
    "SubscriptionDetails",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "is_active_status",
    # Events
    "CanceledPayload",
    "CreatedPayload",
    "EventPayload",
    "LifecycleEvent",
    "LifecycleEventType",
    "OpaquePayload",
    "PaymentFailedPayload",
    "PaymentSucceededPayload",
    "PlanChangedPayload",
    "ProjectedState",
    "TrialEndedPayload",
    "TrialStartedPayload",
    "UpdatedPayload",
    "parse_payload",
    # Transitions
    "VALID_TRANSITIONS",
    "SubscriptionTrigger",
    "TransitionRecord",
    "TransitionResult",
    "TriggerMetadata",
    "allowed_triggers",
    "next_status",
    "payment_trigger",
    "transition_path",
    # Configuration
    "BillingGatewayConfig",
    "BillingSettings",
    "CacheConfig",
    "DataStoreConfig",
    "PubSubConfig",
    "SubscriptionConfig",
]
