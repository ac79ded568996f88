"""Plan catalog and provider product bindings.

Both are built once from settings at startup and are read-only afterwards.
They are passed explicitly to the quota guard, the reconciler and the checkout
bridge rather than being referenced as module globals.
"""
import enum
import math
from collections.abc import Mapping
from types import MappingProxyType
from typing import Final

from chatmeter.core.config import Settings

UNLIMITED: Final[float] = math.inf


class Plan(str, enum.Enum):
    free = "free"
    pro = "pro"
    unlimited = "unlimited"


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    canceled = "canceled"
    revoked = "revoked"
    expired = "expired"


# Statuses after which the paid plan no longer applies
TERMINAL_STATUSES = frozenset({SubscriptionStatus.revoked, SubscriptionStatus.expired})

DEFAULT_QUOTAS: Mapping[Plan, float] = MappingProxyType({
    Plan.free: 10,
    Plan.pro: 100,
    Plan.unlimited: UNLIMITED,
})


def parse_plan(value: str | None) -> Plan | None:
    """Return the Plan for a raw identifier, or None if it is not a known plan."""
    if value is None:
        return None
    try:
        return Plan(value)
    except ValueError:
        return None


class PlanCatalog:
    """Monthly quota per plan.

    Unknown plan identifiers get the free quota, never an unbounded one.
    """

    def __init__(self, quotas: Mapping[Plan, float] = DEFAULT_QUOTAS):
        if Plan.free not in quotas:
            raise ValueError("Plan catalog must define a quota for the free plan")
        self._quotas: Mapping[Plan, float] = MappingProxyType(dict(quotas))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanCatalog":
        return cls({
            Plan.free: settings.plan_quota_free,
            Plan.pro: settings.plan_quota_pro,
            Plan.unlimited: UNLIMITED,
        })

    def quota(self, plan: Plan | str | None) -> float:
        resolved = plan if isinstance(plan, Plan) else parse_plan(plan)
        if resolved is None or resolved not in self._quotas:
            return self._quotas[Plan.free]
        return self._quotas[resolved]

    def is_unlimited(self, plan: Plan | str | None) -> bool:
        return math.isinf(self.quota(plan))

    def limit_for_display(self, plan: Plan | str | None) -> int | None:
        """Quota as a JSON-friendly value (None for unlimited)."""
        quota = self.quota(plan)
        return None if math.isinf(quota) else int(quota)

    def as_dict(self) -> dict[str, int | None]:
        return {plan.value: self.limit_for_display(plan) for plan in self._quotas}


class ProductBindings:
    """Exact-match mapping between paid plans and provider product ids."""

    def __init__(self, products: Mapping[Plan, str | None]):
        bound = {plan: product for plan, product in products.items() if product}
        self._by_plan: Mapping[Plan, str] = MappingProxyType(bound)
        self._by_product: Mapping[str, Plan] = MappingProxyType(
            {product: plan for plan, product in bound.items()}
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProductBindings":
        return cls({
            Plan.pro: settings.stripe_product_pro,
            Plan.unlimited: settings.stripe_product_unlimited,
        })

    def product_for_plan(self, plan: Plan | str) -> str | None:
        resolved = plan if isinstance(plan, Plan) else parse_plan(plan)
        if resolved is None:
            return None
        return self._by_plan.get(resolved)

    def plan_for_product(self, product_id: str | None) -> Plan | None:
        if not product_id:
            return None
        return self._by_product.get(product_id)
