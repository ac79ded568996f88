"""Database models for entitlements and usage metering."""
from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String

from chatmeter.billing.billing_period import utc_now
from chatmeter.database import Base


class Subscription(Base):
    """Current plan and status for a user (at most one row per user)."""
    __tablename__ = "subscriptions"

    user_id = Column(String(64), primary_key=True)
    plan = Column(String(20), nullable=False, default="free")  # free | pro | unlimited
    status = Column(String(20), nullable=False, default="active")  # active | canceled | revoked | expired
    provider_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    # created timestamp of the newest provider event applied to this row
    provider_event_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "provider_subscription_id IS NOT NULL OR plan = 'free'",
            name="ck_subscriptions_free_without_provider",
        ),
    )


class Usage(Base):
    """Completed chat turns per user per calendar month."""
    __tablename__ = "usage"

    user_id = Column(String(64), primary_key=True)
    month = Column(String(7), primary_key=True)  # YYYY-MM
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("count >= 0", name="ck_usage_count_non_negative"),
    )
