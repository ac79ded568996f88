"""Usage counter and recorder.

``record_usage`` is the single place where completed chat turns are counted.
Counts are only ever incremented, and only in the bucket of the month in which
the increment happens.
"""
import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatmeter.billing.billing_period import get_current_month, utc_now
from chatmeter.billing.models import Usage
from chatmeter.core.metrics import USAGE_RECORDED

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def get_usage_count(db: Session, user_id: str, month: str) -> int:
    """Get the number of completed turns for a user in a month.

    Args:
        db: Database session.
        user_id: The internal user ID.
        month: The bucket as YYYY-MM.

    Returns:
        The current count (0 if no record exists).
    """
    usage = db.query(Usage).filter(
        Usage.user_id == user_id,
        Usage.month == month,
    ).first()

    return usage.count if usage else 0


def read_usage_count(db: Session, user_id: str, month: str) -> int:
    """Like ``get_usage_count`` but degrades to 0 if the store cannot be read."""
    try:
        return get_usage_count(db, user_id, month)
    except SQLAlchemyError:
        logger.exception("usage.read_failed", extra={"user_id": user_id, "month": month})
        db.rollback()
        return 0


def _increment_with_upsert(db: Session, user_id: str, month: str, now: datetime) -> bool:
    insert_fn = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert_fn is None:
        return False

    stmt = insert_fn(Usage).values(user_id=user_id, month=month, count=1, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Usage.user_id, Usage.month],
        set_={"count": Usage.count + 1, "updated_at": now},
    )
    db.execute(stmt)
    return True


def _increment_with_lock(db: Session, user_id: str, month: str, now: datetime) -> None:
    usage = db.query(Usage).filter(
        Usage.user_id == user_id,
        Usage.month == month,
    ).with_for_update().first()

    if usage:
        db.execute(
            update(Usage)
            .where(Usage.user_id == user_id, Usage.month == month)
            .values(count=Usage.count + 1, updated_at=now)
        )
    else:
        db.add(Usage(user_id=user_id, month=month, count=1, updated_at=now))
    db.flush()


def record_usage(db: Session, user_id: str, now: datetime | None = None) -> int:
    """Count one completed chat turn for the user's current month.

    The first call of a month creates the bucket at 1. The increment is a
    single conditional upsert where the database supports one, so concurrent
    callers never lose counts.

    Args:
        db: Database session.
        user_id: The internal user ID.
        now: Override for the current time (tests).

    Returns:
        The count after the increment.

    Note:
        This function does NOT commit the transaction.
    """
    moment = now or utc_now()
    month = get_current_month(moment)

    if not _increment_with_upsert(db, user_id, month, moment):
        _increment_with_lock(db, user_id, month, moment)

    db.expire_all()
    count = get_usage_count(db, user_id, month)
    USAGE_RECORDED.inc()
    logger.info("usage.recorded", extra={"user_id": user_id, "month": month, "count": count})
    return count
