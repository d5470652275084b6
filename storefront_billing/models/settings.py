"""Configuration models for config/billing.yaml."""

from typing import Optional

from pydantic import BaseModel, Field

from storefront_billing.models.plan import PlanCapabilities, PlanType


class DataStoreConfig(BaseModel):
    """Connection to the relational data store."""

    backend: str = Field(default="memory", description="'memory' or 'rest'")
    url: str = Field(default="http://localhost:54321", description="REST endpoint base URL")
    api_key: str = Field(default="", description="Service key sent as apikey/Bearer")
    timeout_seconds: float = Field(default=10.0, description="Per-request timeout")


class CacheConfig(BaseModel):
    """Read-through cache sizing."""

    ttl_seconds: float = Field(default=300.0, description="Entry time-to-live")
    max_size: int = Field(default=1000, description="Maximum number of entries")
    cleanup_interval_seconds: float = Field(default=300.0, description="Lazy cleanup period")


class BillingGatewayConfig(BaseModel):
    """Payment processor (Stripe) settings."""

    enabled: bool = Field(default=False, description="Use the real processor")
    api_key: str = Field(default="", description="Processor secret key")
    success_url: str = Field(default="http://localhost:3000/billing/success")
    cancel_url: str = Field(default="http://localhost:3000/billing/cancel")
    portal_return_url: str = Field(default="http://localhost:3000/billing")
    timeout_seconds: float = Field(default=10.0, description="Timeout per processor call")
    max_retries: int = Field(default=2, description="Retries for retryable processor failures")
    retry_base_delay: float = Field(default=1.0, description="Backoff base delay in seconds")


class PubSubConfig(BaseModel):
    """Lifecycle event publishing."""

    enabled: bool = Field(default=False, description="Publish lifecycle events to Pub/Sub")
    project_id: str = Field(default="storefront-local", description="GCP project ID")
    topic: str = Field(default="subscription-lifecycle", description="Pub/Sub topic name")


class SubscriptionConfig(BaseModel):
    """Trial and grace behaviour."""

    trial_period: str = Field(default="P7D", description="ISO 8601 trial duration")
    trial_plan_type: PlanType = Field(default=PlanType.ENTERPRISE, description="Plan granted during trial")
    trial_amount: int = Field(default=19900, description="Trial plan price in minor units")
    currency: str = Field(default="brl", description="Default currency")
    trial_ending_threshold_days: int = Field(default=3, description="Days before trial end to warn")
    grace_period: str = Field(default="P3D", description="ISO 8601 grace period after failed payment")


class BillingSettings(BaseModel):
    """Complete billing.yaml configuration."""

    data_store: DataStoreConfig = Field(default_factory=DataStoreConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    billing_gateway: BillingGatewayConfig = Field(default_factory=BillingGatewayConfig)
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    plans: list[PlanCapabilities] = Field(default_factory=list, description="Plan capability overrides")

    def plan_for(self, plan_type: PlanType) -> Optional[PlanCapabilities]:
        for plan in self.plans:
            if plan.plan_type == plan_type:
                return plan
        return None
