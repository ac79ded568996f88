"""Quota enforcement for monthly chat usage.

``QuotaGuard.admit`` is a read-only check made before a chat turn reaches the
completion provider. The increment happens after the turn completes
(``metering.record_usage``), so concurrent requests from one user near their
limit can overshoot it by at most (in-flight requests - 1). That bound is
accepted; quota is a soft limit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from chatmeter.billing.billing_period import get_current_month, get_month_reset_at
from chatmeter.billing.entitlements import resolve_plan
from chatmeter.billing.metering import read_usage_count
from chatmeter.billing.plans import Plan, PlanCatalog
from chatmeter.core.metrics import QUOTA_DECISIONS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allowed:
    """The request may proceed."""
    plan: Plan


@dataclass(frozen=True)
class Denied:
    """The user has used up the quota for the current month."""
    plan: Plan
    limit: int
    count: int


@dataclass(frozen=True)
class UsageSummary:
    """Current-period usage projection shown to the user."""
    plan: Plan
    count: int
    limit: int | None  # None means unlimited
    month: str

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.value,
            "count": self.count,
            "limit": self.limit,
            "month": self.month,
            "resets_at": get_month_reset_at(self.month).isoformat(),
        }


def default_usage_summary(catalog: PlanCatalog, month: str | None = None) -> UsageSummary:
    """Summary used when the user or the store cannot be resolved."""
    return UsageSummary(
        plan=Plan.free,
        count=0,
        limit=catalog.limit_for_display(Plan.free),
        month=month or get_current_month(),
    )


class QuotaGuard:
    """Admits or rejects chat requests against the plan catalog."""

    def __init__(self, db: Session, catalog: PlanCatalog):
        self.db = db
        self.catalog = catalog

    def admit(self, user_id: str, now: datetime | None = None) -> Allowed | Denied:
        """Check whether ``user_id`` may start another chat turn this month.

        Args:
            user_id: The internal user ID.
            now: Override for the current time (tests).

        Returns:
            Allowed, or Denied carrying the limit and the current count.
        """
        plan = resolve_plan(self.db, user_id)

        if self.catalog.is_unlimited(plan):
            QUOTA_DECISIONS.labels(decision="allowed").inc()
            return Allowed(plan=plan)

        month = get_current_month(now)
        count = read_usage_count(self.db, user_id, month)
        limit = self.catalog.quota(plan)

        if count >= limit:
            QUOTA_DECISIONS.labels(decision="denied").inc()
            logger.info(
                "quota.denied",
                extra={"user_id": user_id, "plan": plan.value, "limit": int(limit), "count": count},
            )
            return Denied(plan=plan, limit=int(limit), count=count)

        QUOTA_DECISIONS.labels(decision="allowed").inc()
        return Allowed(plan=plan)

    def summary(self, user_id: str, now: datetime | None = None) -> UsageSummary:
        """Usage for the current period: plan, count, limit and month."""
        plan = resolve_plan(self.db, user_id)
        month = get_current_month(now)
        return UsageSummary(
            plan=plan,
            count=read_usage_count(self.db, user_id, month),
            limit=self.catalog.limit_for_display(plan),
            month=month,
        )
