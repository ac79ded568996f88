"""Billing API router: usage, subscription state, checkout and webhooks."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatmeter.billing.entitlements import (
    SubscriptionNotFoundError,
    effective_plan,
    get_subscription,
)
from chatmeter.billing.plans import Plan, PlanCatalog, ProductBindings
from chatmeter.billing.quota import QuotaGuard, default_usage_summary
from chatmeter.billing.reconciler import Rejected, WebhookReconciler
from chatmeter.billing.schemas import (
    CancelResponse,
    CheckoutRequest,
    RedirectResponse,
    SubscriptionInfo,
    SubscriptionResponse,
    UsageResponse,
    WebhookAck,
)
from chatmeter.core.auth import CurrentUser, get_current_user, require_user
from chatmeter.core.config import Settings, get_settings
from chatmeter.database import get_db
from chatmeter.services.stripe_service import (
    ConfigurationError,
    NoBillingCustomerError,
    StripeService,
    UnconfiguredPlanError,
    UpstreamProviderError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])


# =============================================================================
# Dependencies
# =============================================================================

def get_plan_catalog(request: Request) -> PlanCatalog:
    """Plan catalog built at startup."""
    return request.app.state.plan_catalog


def get_product_bindings(request: Request) -> ProductBindings:
    """Plan/product bindings built at startup."""
    return request.app.state.product_bindings


def get_quota_guard(
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> QuotaGuard:
    return QuotaGuard(db, catalog)


def get_stripe_service(
    settings: Settings = Depends(get_settings),
    bindings: ProductBindings = Depends(get_product_bindings),
) -> StripeService:
    """Build the provider bridge, failing with 500 when credentials are missing."""
    try:
        return StripeService(settings, bindings)
    except ConfigurationError as exc:
        logger.error("billing.not_configured", extra={"error_message": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Billing is not configured"},
        ) from exc


def get_webhook_reconciler(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    bindings: ProductBindings = Depends(get_product_bindings),
) -> WebhookReconciler:
    return WebhookReconciler(db, bindings, settings.stripe_webhook_secret)


def _upstream_error(exc: UpstreamProviderError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"error": exc.message})


# =============================================================================
# Usage & subscription state
# =============================================================================

@router.get("/user/usage", response_model=UsageResponse)
def get_usage(
    user: CurrentUser | None = Depends(get_current_user),
    guard: QuotaGuard = Depends(get_quota_guard),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    """Current-month usage. Anonymous callers get the free defaults."""
    if user is None:
        return default_usage_summary(catalog).to_dict()
    return guard.summary(user.user_id).to_dict()


@router.get("/user/subscription", response_model=SubscriptionResponse)
def get_user_subscription(
    user: CurrentUser | None = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Plan the caller is entitled to and the subscription record behind it."""
    if user is None:
        return SubscriptionResponse(plan_id=Plan.free.value)

    try:
        record = get_subscription(db, user.user_id)
    except SQLAlchemyError:
        logger.exception("entitlement.read_failed", extra={"user_id": user.user_id})
        db.rollback()
        return SubscriptionResponse(plan_id=Plan.free.value)

    if record is None:
        return SubscriptionResponse(plan_id=Plan.free.value)

    return SubscriptionResponse(
        plan_id=effective_plan(record).value,
        subscription=SubscriptionInfo(
            id=record.provider_subscription_id,
            status=record.status,
            current_period_end=record.current_period_end,
        ),
    )


# =============================================================================
# Checkout / portal
# =============================================================================

@router.post("/checkout", response_model=RedirectResponse)
def create_checkout(
    request: CheckoutRequest,
    user: CurrentUser = Depends(require_user),
    service: StripeService = Depends(get_stripe_service),
):
    """Start a provider-hosted checkout for a paid plan."""
    try:
        url = service.create_checkout(user.user_id, request.plan, email=user.email)
    except UnconfiguredPlanError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(exc)},
        ) from exc
    except UpstreamProviderError as exc:
        raise _upstream_error(exc) from exc
    return RedirectResponse(url=url)


@router.post("/user/billing-portal", response_model=RedirectResponse)
def create_billing_portal(
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    service: StripeService = Depends(get_stripe_service),
):
    """Open the provider's customer portal for the caller."""
    try:
        url = service.create_portal_session(db, user.user_id, email=user.email)
    except NoBillingCustomerError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": str(exc)},
        ) from exc
    except UpstreamProviderError as exc:
        raise _upstream_error(exc) from exc
    return RedirectResponse(url=url)


@router.post("/subscription/cancel", response_model=CancelResponse)
def cancel_subscription(
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    service: StripeService = Depends(get_stripe_service),
):
    """Cancel the caller's subscription at the end of the current period."""
    try:
        service.cancel_subscription(db, user.user_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": str(exc)},
        ) from exc
    except UpstreamProviderError as exc:
        raise _upstream_error(exc) from exc
    return CancelResponse(success=True)


# =============================================================================
# Webhooks
# =============================================================================

@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """Receive a billing-provider event.

    Only authentication failures are answered with an error status; every
    verified delivery is acknowledged so the provider stops retrying it.
    """
    payload = await request.body()
    result = reconciler.reconcile(payload, request.headers)

    if isinstance(result, Rejected):
        return JSONResponse(
            status_code=result.status_code,
            content={"error": result.message, "reason": result.reason.value},
        )
    return WebhookAck(received=True)
