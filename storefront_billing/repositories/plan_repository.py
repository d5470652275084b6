"""Plan repository - capability lookup per plan type.

Starts from the built-in capability table and applies any plan overrides
declared in billing.yaml.
"""

from typing import Optional

from storefront_billing.models import DEFAULT_PLANS, PlanCapabilities, PlanType


class PlanNotFoundError(Exception):
    """Raised when a plan type has no capability definition."""

    pass


class PlanRepository:
    """Repository of plan capabilities.

    Args:
        overrides: Plan definitions replacing the built-in ones for their plan type
    """

    def __init__(self, overrides: Optional[list[PlanCapabilities]] = None):
        self._plans: dict[PlanType, PlanCapabilities] = dict(DEFAULT_PLANS)
        for plan in overrides or []:
            self._plans[plan.plan_type] = plan

    def get_by_type(self, plan_type: str) -> PlanCapabilities:
        """Get plan capabilities.

        Args:
            plan_type: Plan type value (e.g., "pro")

        Returns:
            PlanCapabilities

        Raises:
            PlanNotFoundError: If the plan type is unknown
        """
        plan = self.find_by_type(plan_type)
        if plan is None:
            raise PlanNotFoundError(
                f"Plan not found: {plan_type}. "
                f"Available plans: {[p.value for p in self._plans]}"
            )
        return plan

    def find_by_type(self, plan_type: str) -> Optional[PlanCapabilities]:
        """Find plan capabilities (returns None for unknown plan types)."""
        try:
            return self._plans.get(PlanType(plan_type))
        except ValueError:
            return None

    def get_all(self) -> list[PlanCapabilities]:
        return list(self._plans.values())

    def exists(self, plan_type: str) -> bool:
        return self.find_by_type(plan_type) is not None

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, plan_type: str) -> bool:
        return self.exists(plan_type)

    def __repr__(self) -> str:
        return f"PlanRepository(plans={len(self._plans)})"
