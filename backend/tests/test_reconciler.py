"""Tests for webhook reconciliation into the entitlement store."""
import json
import logging
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from chatmeter.billing.correlation import Transition, parse_event
from chatmeter.billing.models import Subscription
from chatmeter.billing.reconciler import (
    Acknowledged,
    Anomaly,
    RejectReason,
    Rejected,
    WebhookReconciler,
)

from stripe_events import (
    WEBHOOK_SECRET,
    checkout_completed,
    envelope,
    sign,
    signed_request,
    subscription_event,
)

PERIOD_END = 1_900_000_000
T0 = 1_700_000_000


@pytest.fixture
def reconciler(db_session, bindings):
    return WebhookReconciler(db_session, bindings, WEBHOOK_SECRET)


def _deliver(reconciler, event):
    body, headers = signed_request(event)
    return reconciler.reconcile(body, headers)


def _record(db, user_id="user-1") -> Subscription | None:
    db.expire_all()
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


def _snapshot(record: Subscription) -> tuple:
    return (
        record.plan,
        record.status,
        record.provider_subscription_id,
        record.current_period_end,
        record.provider_event_at,
    )


def _count(db) -> int:
    return db.query(Subscription).count()


class TestAuthentication:
    def test_missing_signature_rejected_without_writes(self, reconciler, db_session):
        body = json.dumps(checkout_completed()).encode()
        result = reconciler.reconcile(body, {"Content-Type": "application/json"})

        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.unauthorized
        assert result.status_code == 401
        assert _count(db_session) == 0

    def test_bad_signature_rejected(self, reconciler, db_session):
        body = json.dumps(checkout_completed())
        result = reconciler.reconcile(body.encode(), {"Stripe-Signature": sign(body, secret="whsec_wrong")})

        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.invalid_signature
        assert result.status_code == 400
        assert _count(db_session) == 0

    def test_tampered_body_rejected(self, reconciler):
        body = json.dumps(checkout_completed(user_id="user-1"))
        header = sign(body)
        tampered = body.replace("user-1", "attacker")
        result = reconciler.reconcile(tampered.encode(), {"stripe-signature": header})
        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.invalid_signature

    def test_stale_timestamp_rejected(self, reconciler):
        body = json.dumps(checkout_completed())
        header = sign(body, timestamp=T0)
        result = reconciler.reconcile(body.encode(), {"Stripe-Signature": header})
        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.invalid_signature

    def test_missing_secret_is_configuration_error(self, db_session, bindings):
        reconciler = WebhookReconciler(db_session, bindings, None)
        result = _deliver(reconciler, checkout_completed())
        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.configuration_error
        assert result.status_code == 500

    def test_signed_non_json_is_invalid_payload(self, reconciler):
        body = "not json"
        result = reconciler.reconcile(body.encode(), {"Stripe-Signature": sign(body)})
        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.invalid_payload
        assert result.status_code == 400


class TestActivate:
    def test_checkout_completed_activates_plan(self, reconciler, db_session):
        result = _deliver(reconciler, checkout_completed(user_id="user-1", product_id="prod_pro", subscription_id="sub_1"))

        assert isinstance(result, Acknowledged)
        assert result.applied
        assert result.transition is Transition.activate
        record = _record(db_session)
        assert record.plan == "pro"
        assert record.status == "active"
        assert record.provider_subscription_id == "sub_1"

    def test_same_event_twice_is_idempotent(self, reconciler, db_session):
        event = subscription_event("customer.subscription.created", product_id="prod_unlimited", created=T0)
        first = _deliver(reconciler, event)
        after_first = _snapshot(_record(db_session))

        second = _deliver(reconciler, event)

        assert first.applied
        assert not second.applied
        assert second.anomaly is None
        assert _snapshot(_record(db_session)) == after_first
        assert _count(db_session) == 1

    def test_subscription_period_end_is_stored(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", period_end=PERIOD_END))
        record = _record(db_session)
        assert record.current_period_end.replace(tzinfo=timezone.utc) == datetime.fromtimestamp(PERIOD_END, timezone.utc)

    def test_unmatched_product_never_writes_paid_plan(self, reconciler, db_session, caplog):
        caplog.set_level(logging.ERROR, logger="chatmeter.anomalies")
        _deliver(reconciler, checkout_completed(product_id="prod_someone_elses"))

        record = _record(db_session)
        assert record.plan == "free"
        assert any(getattr(r, "anomaly", None) == "unmatched_product" for r in caplog.records)

    def test_unmatched_product_downgrades_existing_paid_plan(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", created=T0))
        _deliver(reconciler, subscription_event(product_id="prod_unknown", created=T0 + 10))
        assert _record(db_session).plan == "free"

    def test_checkout_without_user_id_is_acknowledged_without_writes(self, reconciler, db_session, caplog):
        caplog.set_level(logging.ERROR, logger="chatmeter.anomalies")
        result = _deliver(reconciler, checkout_completed(user_id=None))

        assert isinstance(result, Acknowledged)
        assert result.anomaly is Anomaly.correlation_missing
        assert not result.applied
        assert _count(db_session) == 0
        assert any(getattr(r, "anomaly", None) == "correlation_missing" for r in caplog.records)

    def test_activation_without_subscription_id_is_not_written(self, reconciler, db_session):
        result = _deliver(reconciler, checkout_completed(subscription_id=None))
        assert result.anomaly is Anomaly.missing_subscription_id
        assert _count(db_session) == 0

    def test_unpaid_async_checkout_is_ignored(self, reconciler, db_session):
        result = _deliver(reconciler, checkout_completed(
            event_type="checkout.session.async_payment_failed",
            payment_status="unpaid",
        ))
        assert isinstance(result, Acknowledged)
        assert result.transition is Transition.ignore
        assert _count(db_session) == 0

    def test_unpaid_completed_checkout_waits_for_payment(self, reconciler, db_session):
        pending = _deliver(reconciler, checkout_completed(payment_status="unpaid", created=T0))
        assert pending.transition is Transition.ignore
        assert _count(db_session) == 0

        _deliver(reconciler, checkout_completed(
            event_type="checkout.session.async_payment_succeeded", payment_status="paid", created=T0 + 10,
        ))
        record = _record(db_session)
        assert (record.plan, record.status) == ("pro", "active")

    def test_checkout_without_payment_due_activates(self, reconciler, db_session):
        result = _deliver(reconciler, checkout_completed(payment_status="no_payment_required"))
        assert result.applied
        assert _record(db_session).status == "active"

    def test_resubscribe_after_cancel(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", created=T0))
        _deliver(reconciler, subscription_event(cancel_at_period_end=True, created=T0 + 10))
        assert _record(db_session).status == "canceled"

        _deliver(reconciler, subscription_event(created=T0 + 20))
        record = _record(db_session)
        assert record.status == "active"
        assert record.plan == "pro"

    def test_new_checkout_restarts_after_revoke(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", created=T0))
        _deliver(reconciler, subscription_event("customer.subscription.deleted", status="canceled", created=T0 + 10))
        _deliver(reconciler, checkout_completed(subscription_id="sub_new", product_id="prod_unlimited", created=T0 + 20))

        record = _record(db_session)
        assert (record.plan, record.status, record.provider_subscription_id) == ("unlimited", "active", "sub_new")


class TestCancel:
    def test_cancel_preserves_plan_and_period_end(self, reconciler, db_session):
        _deliver(reconciler, subscription_event(
            "customer.subscription.created", product_id="prod_unlimited", period_end=PERIOD_END, created=T0,
        ))
        before = _record(db_session)
        plan, period_end = before.plan, before.current_period_end

        result = _deliver(reconciler, subscription_event(
            product_id="prod_unlimited", period_end=PERIOD_END, cancel_at_period_end=True, created=T0 + 10,
        ))

        assert result.transition is Transition.cancel
        record = _record(db_session)
        assert record.status == "canceled"
        assert record.plan == plan == "unlimited"
        assert record.current_period_end == period_end

    def test_cancel_without_period_keeps_stored_period(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", period_end=PERIOD_END, created=T0))
        stored = _record(db_session).current_period_end
        _deliver(reconciler, subscription_event(cancel_at_period_end=True, period_end=None, created=T0 + 10))
        assert _record(db_session).current_period_end == stored

    def test_cancel_does_not_move_period_end(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", period_end=PERIOD_END, created=T0))
        stored = _record(db_session).current_period_end
        _deliver(reconciler, subscription_event(cancel_at_period_end=True, period_end=PERIOD_END + 86400, created=T0 + 10))
        assert _record(db_session).current_period_end == stored

    def test_cancel_for_unknown_subscription(self, reconciler, db_session):
        result = _deliver(reconciler, subscription_event(cancel_at_period_end=True))
        assert result.anomaly is Anomaly.unknown_subscription
        assert _count(db_session) == 0


class TestRevoke:
    @pytest.mark.parametrize("product_id", ["prod_pro", "prod_unlimited"])
    def test_revoke_always_results_in_free(self, reconciler, db_session, product_id):
        _deliver(reconciler, subscription_event("customer.subscription.created", product_id=product_id, created=T0))
        _deliver(reconciler, subscription_event(
            "customer.subscription.deleted", status="canceled", product_id=product_id, created=T0 + 10,
        ))

        record = _record(db_session)
        assert record.plan == "free"
        assert record.status == "revoked"
        assert record.provider_subscription_id is None

    def test_revoke_after_cancel_expires(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", created=T0))
        _deliver(reconciler, subscription_event(cancel_at_period_end=True, created=T0 + 10))
        _deliver(reconciler, subscription_event("customer.subscription.deleted", status="canceled", created=T0 + 20))

        record = _record(db_session)
        assert (record.plan, record.status) == ("free", "expired")

    def test_revoke_redelivery_is_noop(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", created=T0))
        deleted = subscription_event("customer.subscription.deleted", status="canceled", created=T0 + 10)
        _deliver(reconciler, deleted)
        second = _deliver(reconciler, deleted)

        assert not second.applied
        assert _record(db_session).status == "revoked"

    def test_superseded_subscription_is_ignored(self, reconciler, db_session):
        _deliver(reconciler, checkout_completed(subscription_id="sub_new", created=T0))
        result = _deliver(reconciler, subscription_event(
            "customer.subscription.deleted", status="canceled", subscription_id="sub_old", created=T0 + 10,
        ))

        assert not result.applied
        record = _record(db_session)
        assert (record.plan, record.status, record.provider_subscription_id) == ("pro", "active", "sub_new")

    def test_old_subscription_update_cannot_take_over_upgraded_row(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", subscription_id="sub_old", created=T0))
        _deliver(reconciler, checkout_completed(subscription_id="sub_new", product_id="prod_unlimited", created=T0 + 10))

        renewal = _deliver(reconciler, subscription_event(subscription_id="sub_old", created=T0 + 20))
        assert not renewal.applied
        record = _record(db_session)
        assert (record.plan, record.status, record.provider_subscription_id) == ("unlimited", "active", "sub_new")

        _deliver(reconciler, subscription_event(
            "customer.subscription.deleted", status="canceled", product_id="prod_unlimited",
            subscription_id="sub_new", created=T0 + 30,
        ))
        record = _record(db_session)
        assert (record.plan, record.status, record.provider_subscription_id) == ("free", "revoked", None)


class TestOrderingAndCorrelation:
    def test_stale_event_is_ignored(self, reconciler, db_session):
        _deliver(reconciler, subscription_event("customer.subscription.created", created=T0))
        _deliver(reconciler, subscription_event(cancel_at_period_end=True, created=T0 + 100))

        late = _deliver(reconciler, subscription_event(created=T0 + 50))

        assert not late.applied
        assert _record(db_session).status == "canceled"

    def test_subscription_event_falls_back_to_provider_id(self, reconciler, db_session):
        _deliver(reconciler, checkout_completed(user_id="user-7", subscription_id="sub_77", created=T0))
        result = _deliver(reconciler, subscription_event(
            user_id=None, subscription_id="sub_77", cancel_at_period_end=True, created=T0 + 10,
        ))

        assert result.applied
        assert result.user_id == "user-7"
        assert _record(db_session, "user-7").status == "canceled"

    def test_unattributable_subscription_event(self, reconciler, db_session):
        result = _deliver(reconciler, subscription_event("customer.subscription.created", user_id=None))
        assert result.anomaly is Anomaly.correlation_missing
        assert _count(db_session) == 0

    def test_irrelevant_event_types_are_acknowledged(self, reconciler, db_session):
        result = _deliver(reconciler, envelope("invoice.paid", {"id": "in_1"}))
        assert isinstance(result, Acknowledged)
        assert result.transition is Transition.ignore
        assert _count(db_session) == 0


class TestStoreFailures:
    def test_write_failure_is_acknowledged(self, reconciler, db_session, caplog):
        caplog.set_level(logging.ERROR, logger="chatmeter.anomalies")
        with patch(
            "chatmeter.billing.reconciler.upsert_subscription",
            side_effect=OperationalError("INSERT", {}, Exception("disk full")),
        ):
            result = _deliver(reconciler, checkout_completed())

        assert isinstance(result, Acknowledged)
        assert result.anomaly is Anomaly.store_write_failed
        assert _count(db_session) == 0
        assert any(getattr(r, "anomaly", None) == "store_write_failed" for r in caplog.records)

    def test_apply_accepts_parsed_events(self, reconciler, db_session):
        result = reconciler.apply(parse_event(checkout_completed(user_id="direct")))
        assert result.applied
        assert _record(db_session, "direct").plan == "pro"
