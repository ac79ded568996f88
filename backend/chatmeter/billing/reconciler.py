"""Reconciliation of billing-provider webhooks into the entitlement store.

Retry policy
------------
The provider retries any delivery that does not get a 2xx response. Only
authentication problems (missing or invalid signature, missing webhook secret)
are rejected. Everything that goes wrong after the signature is verified
(no correlation id, unmatched product, unknown event type, a failed store
write) is acknowledged so the provider does not redeliver it forever, and is
reported through the anomaly logger and the webhook counter instead.

Ordering and duplicates
-----------------------
Transitions are idempotent: a transition whose target values equal the stored
row writes nothing. Events older than the newest event already applied to a
row (by the provider's ``created`` timestamp) are ignored as stale.
"""
import enum
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatmeter.billing.billing_period import as_utc
from chatmeter.billing.correlation import (
    EventFamily,
    MalformedEventError,
    ProviderEvent,
    Transition,
    classify,
    extract_period_end,
    extract_product_id,
    extract_subscription_id,
    extract_user_id,
    parse_event,
)
from chatmeter.billing.entitlements import find_subscription, upsert_subscription
from chatmeter.billing.models import Subscription
from chatmeter.billing.plans import TERMINAL_STATUSES, Plan, ProductBindings, SubscriptionStatus
from chatmeter.core.logging import report_anomaly
from chatmeter.core.metrics import WEBHOOK_EVENTS
from chatmeter.services.stripe_service import WebhookSignatureError, verify_webhook_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

SignatureVerifier = Callable[[bytes, str, str], None]


class RejectReason(str, enum.Enum):
    unauthorized = "unauthorized"
    invalid_signature = "invalid_signature"
    invalid_payload = "invalid_payload"
    configuration_error = "configuration_error"


_REJECT_STATUS = {
    RejectReason.unauthorized: 401,
    RejectReason.invalid_signature: 400,
    RejectReason.invalid_payload: 400,
    RejectReason.configuration_error: 500,
}


class Anomaly(str, enum.Enum):
    correlation_missing = "correlation_missing"
    unmatched_product = "unmatched_product"
    unknown_subscription = "unknown_subscription"
    missing_subscription_id = "missing_subscription_id"
    store_write_failed = "store_write_failed"


@dataclass(frozen=True)
class Rejected:
    """Delivery refused; the provider should retry it."""
    reason: RejectReason
    message: str

    @property
    def status_code(self) -> int:
        return _REJECT_STATUS[self.reason]


@dataclass(frozen=True)
class Acknowledged:
    """Delivery accepted, whether or not it changed anything."""
    event_id: str
    event_type: str
    transition: Transition
    applied: bool = False
    user_id: str | None = None
    anomaly: Anomaly | None = None
    note: str | None = None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        value = next((v for k, v in headers.items() if k.lower() == lowered), None)
    return value or None


def _same_instant(left: datetime | None, right: datetime | None) -> bool:
    return as_utc(left) == as_utc(right)


class WebhookReconciler:
    """Verifies webhook deliveries and applies them to the entitlement store."""

    def __init__(
        self,
        db: Session,
        bindings: ProductBindings,
        webhook_secret: str | None,
        verifier: SignatureVerifier = verify_webhook_signature,
    ):
        self.db = db
        self.bindings = bindings
        self.webhook_secret = webhook_secret
        self.verifier = verifier

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def reconcile(self, raw_body: bytes, headers: Mapping[str, str]) -> Acknowledged | Rejected:
        """Authenticate a delivery, then apply it.

        Args:
            raw_body: The request body exactly as received.
            headers: The request headers.

        Returns:
            Rejected for authentication/configuration failures, otherwise
            Acknowledged.
        """
        signature = _header(headers, SIGNATURE_HEADER)
        if not signature:
            return self._reject(RejectReason.unauthorized, "Missing webhook signature")

        if not self.webhook_secret:
            logger.error("webhook.secret_missing")
            return self._reject(RejectReason.configuration_error, "Webhook secret is not configured")

        try:
            self.verifier(raw_body, signature, self.webhook_secret)
        except WebhookSignatureError as exc:
            return self._reject(RejectReason.invalid_signature, f"Invalid webhook signature: {exc}")

        try:
            event = parse_event(json.loads(raw_body))
        except (ValueError, MalformedEventError) as exc:
            return self._reject(RejectReason.invalid_payload, f"Invalid webhook payload: {exc}")

        result = self.apply(event)
        if result.anomaly is not None:
            WEBHOOK_EVENTS.labels(result="anomaly").inc()
        elif result.applied:
            WEBHOOK_EVENTS.labels(result="applied").inc()
        else:
            WEBHOOK_EVENTS.labels(result="noop").inc()
        return result

    def _reject(self, reason: RejectReason, message: str) -> Rejected:
        WEBHOOK_EVENTS.labels(result=f"rejected_{reason.value}").inc()
        logger.warning("webhook.rejected", extra={"reason": reason.value, "detail": message})
        return Rejected(reason=reason, message=message)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def apply(self, event: ProviderEvent) -> Acknowledged:
        """Apply an already-verified event. Never raises for store failures."""
        transition = classify(event)
        logger.info(
            "webhook.received",
            extra={"event_id": event.event_id, "event_type": event.event_type, "transition": transition.value},
        )
        if transition is Transition.ignore:
            return Acknowledged(event.event_id, event.event_type, transition, note="no-op event")

        user = extract_user_id(event)
        subscription_id = extract_subscription_id(event)

        if user.value is None and event.family is EventFamily.checkout:
            return self._anomaly(
                event,
                transition,
                Anomaly.correlation_missing,
                "Checkout event carries no user id; not applied",
                provider_subscription_id=subscription_id,
            )

        handlers = {
            Transition.activate: self._activate,
            Transition.cancel: self._cancel,
            Transition.revoke: self._revoke,
        }
        try:
            result = handlers[transition](event, user.value, subscription_id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "webhook.store_write_failed",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return self._anomaly(
                event,
                transition,
                Anomaly.store_write_failed,
                "Entitlement store write failed; event acknowledged without being applied",
                user_id=user.value,
            )
        return result

    def _anomaly(
        self,
        event: ProviderEvent,
        transition: Transition,
        anomaly: Anomaly,
        message: str,
        user_id: str | None = None,
        **fields: Any,
    ) -> Acknowledged:
        report_anomaly(
            anomaly.value,
            message,
            event_id=event.event_id,
            event_type=event.event_type,
            user_id=user_id,
            **fields,
        )
        return Acknowledged(
            event.event_id, event.event_type, transition, user_id=user_id, anomaly=anomaly, note=message
        )

    def _skip(self, event: ProviderEvent, transition: Transition, user_id: str | None, note: str) -> Acknowledged:
        logger.info(
            "webhook.skipped",
            extra={"event_id": event.event_id, "event_type": event.event_type, "note": note},
        )
        return Acknowledged(event.event_id, event.event_type, transition, user_id=user_id, note=note)

    @staticmethod
    def _is_stale(record: Subscription | None, event: ProviderEvent) -> bool:
        if record is None or record.provider_event_at is None or event.created_at is None:
            return False
        return as_utc(event.created_at) < as_utc(record.provider_event_at)

    def _write(
        self,
        event: ProviderEvent,
        transition: Transition,
        record: Subscription | None,
        user_id: str | None,
        values: dict[str, Any],
    ) -> Acknowledged:
        """Write ``values`` unless the record already holds them."""
        owner = record.user_id if record is not None else user_id
        if record is not None and self._matches(record, values):
            return self._skip(event, transition, owner, "already applied")

        if event.created_at is not None:
            values["provider_event_at"] = event.created_at

        if record is None:
            upsert_subscription(self.db, owner, **values)
        else:
            for key, value in values.items():
                setattr(record, key, value)
            self.db.flush()

        logger.info(
            "webhook.applied",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "transition": transition.value,
                "user_id": owner,
                "plan": values.get("plan", record.plan if record is not None else None),
                "status": values.get("status"),
            },
        )
        return Acknowledged(event.event_id, event.event_type, transition, applied=True, user_id=owner)

    @staticmethod
    def _matches(record: Subscription, values: Mapping[str, Any]) -> bool:
        for key, value in values.items():
            current = getattr(record, key)
            if isinstance(value, datetime) or isinstance(current, datetime):
                if not _same_instant(current, value):
                    return False
            elif current != value:
                return False
        return True

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _plan_for(self, event: ProviderEvent, user_id: str | None) -> Plan:
        product = extract_product_id(event)
        plan = self.bindings.plan_for_product(product.value)
        if plan is None:
            report_anomaly(
                Anomaly.unmatched_product.value,
                "Product id does not match any configured plan; recording free",
                event_id=event.event_id,
                event_type=event.event_type,
                user_id=user_id,
                product_id=product.value,
            )
            return Plan.free
        return plan

    def _activate(self, event: ProviderEvent, user_id: str | None, subscription_id: str | None) -> Acknowledged:
        transition = Transition.activate
        record = find_subscription(self.db, user_id, subscription_id)

        if record is None and user_id is None:
            return self._anomaly(
                event,
                transition,
                Anomaly.correlation_missing,
                "Subscription event has no user id and matches no stored subscription",
                provider_subscription_id=subscription_id,
            )
        if self._is_stale(record, event):
            return self._skip(event, transition, user_id, "stale event")
        # Only a new checkout may replace a live subscription
        if (
            event.family is EventFamily.subscription
            and record is not None
            and subscription_id
            and record.provider_subscription_id
            and record.provider_subscription_id != subscription_id
            and SubscriptionStatus(record.status) not in TERMINAL_STATUSES
        ):
            return self._skip(event, transition, record.user_id, "event is for a superseded subscription")

        target_subscription_id =subscription_id or (record.provider_subscription_id if record else None)
        if not target_subscription_id:
            return self._anomaly(
                event,
                transition,
                Anomaly.missing_subscription_id,
                "Activation carries no provider subscription id; not applied",
                user_id=user_id,
            )

        plan = self._plan_for(event, user_id)
        period_end = extract_period_end(event)
        if period_end is None and record is not None and record.provider_subscription_id == target_subscription_id:
            period_end = record.current_period_end

        values = {
            "plan": plan.value,
            "status": SubscriptionStatus.active.value,
            "provider_subscription_id": target_subscription_id,
            "current_period_end": period_end,
        }
        return self._write(event, transition, record, user_id, values)

    def _locate_for_update(
        self,
        event: ProviderEvent,
        transition: Transition,
        user_id: str | None,
        subscription_id: str | None,
    ) -> Subscription | Acknowledged:
        """Find the row a cancel/revoke applies to, or the ack explaining why not."""
        record = find_subscription(self.db, user_id, subscription_id)
        if record is None:
            return self._anomaly(
                event,
                transition,
                Anomaly.unknown_subscription,
                "No stored subscription matches this event",
                user_id=user_id,
                provider_subscription_id=subscription_id,
            )
        if (
            subscription_id
            and record.provider_subscription_id
            and record.provider_subscription_id != subscription_id
        ):
            return self._skip(event, transition, record.user_id, "event is for a superseded subscription")
        if self._is_stale(record, event):
            return self._skip(event, transition, record.user_id, "stale event")
        return record

    def _cancel(self, event: ProviderEvent, user_id: str | None, subscription_id: str | None) -> Acknowledged:
        transition = Transition.cancel
        located = self._locate_for_update(event, transition, user_id, subscription_id)
        if isinstance(located, Acknowledged):
            return located
        record = located

        if SubscriptionStatus(record.status) in TERMINAL_STATUSES or not record.provider_subscription_id:
            return self._skip(event, transition, record.user_id, "subscription already ended")

        # Plan and period end are kept for the grace period
        values: dict[str, Any] = {"status": SubscriptionStatus.canceled.value}
        if record.current_period_end is None:
            period_end = extract_period_end(event)
            if period_end is not None:
                values["current_period_end"] = period_end
        return self._write(event, transition, record, user_id, values)

    def _revoke(self, event: ProviderEvent, user_id: str | None, subscription_id: str | None) -> Acknowledged:
        transition = Transition.revoke
        located = self._locate_for_update(event, transition, user_id, subscription_id)
        if isinstance(located, Acknowledged):
            return located
        record = located

        status = SubscriptionStatus(record.status)
        if status in TERMINAL_STATUSES and record.plan == Plan.free.value and not record.provider_subscription_id:
            return self._skip(event, transition, record.user_id, "already applied")

        # A canceled subscription that ends has run out its grace period
        ended = SubscriptionStatus.expired if status is SubscriptionStatus.canceled else SubscriptionStatus.revoked
        values = {
            "plan": Plan.free.value,
            "status": ended.value,
            "provider_subscription_id": None,
        }
        return self._write(event, transition, record, user_id, values)
