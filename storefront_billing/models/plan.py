"""Plan types and the plan capability table.

The table is the one place that says which plan unlocks which feature. The
feature gate and the plan limits shown to users both read from it.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PlanType(str, Enum):
    """Commercial plan tiers."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class PlanCapabilities(BaseModel):
    """Price and capability flags for one plan."""

    model_config = ConfigDict(frozen=True)

    plan_type: PlanType = Field(..., description="Plan tier")
    name: str = Field(..., description="Display name")
    price: int = Field(default=0, description="Price in minor units (19900 = R$199.00)")
    currency: str = Field(default="brl", description="ISO 4217 currency code, lowercase")
    interval: str = Field(default="month", description="Billing interval")
    max_products: Optional[int] = Field(None, description="Product limit, None for unlimited")
    max_categories: Optional[int] = Field(None, description="Category limit, None for unlimited")

    imgur_enabled: bool = False
    analytics_enabled: bool = False
    custom_domain_enabled: bool = False
    priority_support: bool = False
    ai_features_enabled: bool = False
    erp_integration: bool = False
    api_access: bool = False


# Feature name -> capability flag on PlanCapabilities
FEATURE_FLAGS: dict[str, str] = {
    "imgur_upload": "imgur_enabled",
    "analytics": "analytics_enabled",
    "custom_domain": "custom_domain_enabled",
    "priority_support": "priority_support",
    "ai_descriptions": "ai_features_enabled",
    "erp_integration": "erp_integration",
    "api_access": "api_access",
}


DEFAULT_PLANS: dict[PlanType, PlanCapabilities] = {
    PlanType.FREE: PlanCapabilities(
        plan_type=PlanType.FREE,
        name="Free",
        price=0,
        max_products=30,
        max_categories=5,
    ),
    PlanType.STARTER: PlanCapabilities(
        plan_type=PlanType.STARTER,
        name="Starter",
        price=4900,
        max_products=300,
        max_categories=30,
        imgur_enabled=True,
        analytics_enabled=True,
        custom_domain_enabled=True,
    ),
    PlanType.PRO: PlanCapabilities(
        plan_type=PlanType.PRO,
        name="Pro",
        price=9900,
        max_products=2000,
        max_categories=200,
        imgur_enabled=True,
        analytics_enabled=True,
        custom_domain_enabled=True,
        priority_support=True,
        ai_features_enabled=True,
    ),
    PlanType.ENTERPRISE: PlanCapabilities(
        plan_type=PlanType.ENTERPRISE,
        name="Enterprise",
        price=19900,
        imgur_enabled=True,
        analytics_enabled=True,
        custom_domain_enabled=True,
        priority_support=True,
        ai_features_enabled=True,
        erp_integration=True,
        api_access=True,
    ),
}


def plan_allows(plan: PlanCapabilities, feature_name: str) -> bool:
    """Check a feature against a plan. Unknown feature names are denied."""
    flag = FEATURE_FLAGS.get(feature_name)
    if flag is None:
        return False
    return bool(getattr(plan, flag))


def plan_limits(plan: PlanCapabilities) -> dict[str, object]:
    """Limits and enabled features for display."""
    return {
        "plan_type": plan.plan_type.value,
        "name": plan.name,
        "max_products": plan.max_products,
        "max_categories": plan.max_categories,
        "features": {feature: plan_allows(plan, feature) for feature in FEATURE_FLAGS},
    }
