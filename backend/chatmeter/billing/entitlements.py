"""Entitlement store: the subscription record that decides a user's plan."""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from chatmeter.billing.models import Subscription
from chatmeter.billing.plans import TERMINAL_STATUSES, Plan, SubscriptionStatus, parse_plan

logger = logging.getLogger(__name__)


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class SubscriptionNotFoundError(EntitlementError):
    """Raised when a user has no provider-backed subscription."""
    pass


def get_subscription(db: Session, user_id: str) -> Subscription | None:
    """Get a user's subscription record.

    Args:
        db: Database session.
        user_id: The internal user ID.

    Returns:
        The Subscription or None.
    """
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


def get_subscription_by_provider_id(
    db: Session,
    provider_subscription_id: str,
) -> Subscription | None:
    """Get the record linked to a billing-provider subscription.

    Args:
        db: Database session.
        provider_subscription_id: The provider's subscription ID.

    Returns:
        The Subscription or None.
    """
    return db.query(Subscription).filter(
        Subscription.provider_subscription_id == provider_subscription_id
    ).first()


def find_subscription(
    db: Session,
    user_id: str | None = None,
    provider_subscription_id: str | None = None,
) -> Subscription | None:
    """Locate a record by user ID, or by provider subscription ID when the user is unknown.

    A known user ID is authoritative: it never falls through to a row owned
    by somebody else that happens to carry the same provider subscription ID.
    """
    if user_id:
        return get_subscription(db, user_id)
    if provider_subscription_id:
        return get_subscription_by_provider_id(db, provider_subscription_id)
    return None


def effective_plan(subscription: Subscription | None) -> Plan:
    """Plan a record currently entitles its user to.

    Missing records, unknown plan values and revoked/expired records all
    resolve to free. Canceled records keep their plan (grace period).
    """
    if subscription is None:
        return Plan.free
    try:
        status = SubscriptionStatus(subscription.status)
    except ValueError:
        return Plan.free
    if status in TERMINAL_STATUSES:
        return Plan.free
    return parse_plan(subscription.plan) or Plan.free


def resolve_plan(db: Session, user_id: str) -> Plan:
    """Resolve a user's plan, degrading to free if the store cannot be read."""
    try:
        return effective_plan(get_subscription(db, user_id))
    except SQLAlchemyError:
        logger.exception("entitlement.read_failed", extra={"user_id": user_id})
        db.rollback()
        return Plan.free


def upsert_subscription(db: Session, user_id: str, **values) -> Subscription:
    """Create or update the record for ``user_id`` with ``values``.

    A concurrent insert for the same user is resolved by re-reading the row
    that won and applying the values to it.

    Note:
        This function does NOT commit the transaction.
    """
    subscription = db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).with_for_update().first()

    if subscription is None:
        subscription = Subscription(user_id=user_id, **values)
        db.add(subscription)
        try:
            db.flush()
            return subscription
        except IntegrityError:
            db.rollback()
            subscription = get_subscription(db, user_id)
            if subscription is None:
                raise

    for key, value in values.items():
        setattr(subscription, key, value)
    db.flush()
    return subscription
