"""Outbound billing-provider calls (Stripe) and webhook signature checks.

Every checkout session is tagged with the internal user id (session metadata,
``client_reference_id`` and the subscription's own metadata). The webhook
reconciler depends on that tag to link provider events back to users.
"""
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import stripe
from sqlalchemy.orm import Session

from chatmeter.billing.entitlements import SubscriptionNotFoundError, get_subscription
from chatmeter.billing.plans import Plan, ProductBindings, parse_plan
from chatmeter.core.config import Settings

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


class BillingError(Exception):
    """Base exception for billing provider errors."""
    pass


class ConfigurationError(BillingError):
    """Raised when provider credentials or bindings are missing."""
    pass


class UnconfiguredPlanError(ConfigurationError):
    """Raised when a plan has no provider product bound to it."""
    pass


class NoBillingCustomerError(BillingError):
    """Raised when the user has no customer at the provider yet."""
    pass


class UpstreamProviderError(BillingError):
    """Raised when the provider API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or 502


class WebhookSignatureError(BillingError):
    """Raised when a webhook body does not match its signature header."""
    pass


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: str,
    secret: str,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> None:
    """Check a Stripe-Signature header against the raw request body.

    Raises:
        WebhookSignatureError: If the signature is malformed, stale or wrong.
    """
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Webhook body is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc


def _object_id(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


@contextmanager
def _provider_call(action: str) -> Iterator[None]:
    try:
        yield
    except stripe.StripeError as exc:
        message = exc.user_message or str(exc) or f"Stripe {action} failed"
        logger.error(
            "billing.provider_error",
            extra={"action": action, "status": exc.http_status, "error_message": message},
        )
        raise UpstreamProviderError(message, status_code=exc.http_status) from exc


class StripeService:
    """Checkout and customer-portal sessions for the current user."""

    def __init__(self, settings: Settings, bindings: ProductBindings):
        if not settings.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        self.api_key = settings.stripe_secret_key
        self.app_url = settings.app_url
        self.bindings = bindings

    def resolve_product(self, plan: Plan | str) -> str:
        """Provider product id for a paid plan.

        Raises:
            UnconfiguredPlanError: If the plan is unknown or has no binding.
        """
        resolved = plan if isinstance(plan, Plan) else parse_plan(plan)
        product_id = self.bindings.product_for_plan(resolved) if resolved else None
        if not product_id:
            raise UnconfiguredPlanError(f"No billing product configured for plan: {plan}")
        return product_id

    def _default_price(self, product_id: str) -> str:
        with _provider_call("product lookup"):
            product = stripe.Product.retrieve(product_id, api_key=self.api_key)
        price_id = _object_id(getattr(product, "default_price", None))
        if not price_id:
            raise UnconfiguredPlanError(f"Billing product {product_id} has no default price")
        return price_id

    def create_checkout(self, user_id: str, plan: Plan | str, email: str | None = None) -> str:
        """Create a subscription checkout session and return its URL."""
        product_id = self.resolve_product(plan)
        price_id = self._default_price(product_id)
        plan_value = plan.value if isinstance(plan, Plan) else plan
        metadata = {"user_id": user_id, "plan": plan_value, "product_id": product_id}

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self.app_url}/pricing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.app_url}/pricing",
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if email:
            params["customer_email"] = email

        with _provider_call("checkout session creation"):
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)

        logger.info(
            "billing.checkout_created",
            extra={"user_id": user_id, "plan": plan_value, "product_id": product_id},
        )
        return session.url

    def _find_customer(self, db: Session, user_id: str, email: str | None) -> str:
        subscription = get_subscription(db, user_id)
        if subscription is not None and subscription.provider_subscription_id:
            with _provider_call("subscription lookup"):
                remote = stripe.Subscription.retrieve(
                    subscription.provider_subscription_id, api_key=self.api_key
                )
            customer_id = _object_id(getattr(remote, "customer", None))
            if customer_id:
                return customer_id

        if email:
            with _provider_call("customer lookup"):
                customers = stripe.Customer.list(email=email, limit=1, api_key=self.api_key)
            if customers.data:
                return customers.data[0].id

        raise NoBillingCustomerError("No billing customer found. Please subscribe first.")

    def create_portal_session(self, db: Session, user_id: str, email: str | None = None) -> str:
        """Create a customer-portal session and return its URL."""
        customer_id = self._find_customer(db, user_id, email)
        with _provider_call("portal session creation"):
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=f"{self.app_url}/dashboard/billing",
                api_key=self.api_key,
            )
        return session.url

    def cancel_subscription(self, db: Session, user_id: str) -> None:
        """Ask the provider to cancel at period end.

        The local record changes when the resulting webhook is reconciled.
        """
        subscription = get_subscription(db, user_id)
        if subscription is None or not subscription.provider_subscription_id:
            raise SubscriptionNotFoundError("No active subscription found")

        with _provider_call("subscription cancellation"):
            stripe.Subscription.modify(
                subscription.provider_subscription_id,
                cancel_at_period_end=True,
                api_key=self.api_key,
            )
        logger.info(
            "billing.cancel_requested",
            extra={"user_id": user_id, "provider_subscription_id": subscription.provider_subscription_id},
        )
