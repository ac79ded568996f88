"""Parsing of billing-provider webhook payloads.

The same logical field (the internal user id, the product id) has lived at
different paths across provider API versions and object types. Each known
location is an ``ExtractionStrategy`` tagged with the event families it applies
to; strategies are tried in order and the first non-empty value wins.
"""
import enum
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from chatmeter.billing.billing_period import from_timestamp


class MalformedEventError(ValueError):
    """Raised when a verified payload is not a provider event."""
    pass


class EventFamily(str, enum.Enum):
    checkout = "checkout"
    subscription = "subscription"
    other = "other"


class Transition(str, enum.Enum):
    activate = "activate"
    cancel = "cancel"
    revoke = "revoke"
    ignore = "ignore"


CHECKOUT_COMPLETED = "checkout.session.completed"
# Later checkout states; only a confirmed payment activates
CHECKOUT_UPDATED = frozenset({
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
})
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_PREFIX = "customer.subscription."

CONFIRMED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})
ENDED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})

USER_ID_KEYS = ("user_id", "userId")
PRODUCT_ID_KEYS = ("product_id", "productId")


@dataclass(frozen=True)
class ProviderEvent:
    """A verified webhook event reduced to what reconciliation needs."""
    event_id: str
    event_type: str
    family: EventFamily
    created_at: datetime | None
    obj: Mapping[str, Any]


def _family_for(event_type: str) -> EventFamily:
    if event_type == CHECKOUT_COMPLETED or event_type in CHECKOUT_UPDATED:
        return EventFamily.checkout
    if event_type.startswith(SUBSCRIPTION_PREFIX):
        return EventFamily.subscription
    return EventFamily.other


def parse_event(payload: Any) -> ProviderEvent:
    """Reduce a decoded webhook body to a ProviderEvent.

    Raises:
        MalformedEventError: If the payload lacks the event envelope.
    """
    if not isinstance(payload, Mapping):
        raise MalformedEventError("Event payload must be a JSON object")

    event_type = payload.get("type")
    obj = _dig(payload, "data", "object")
    if not isinstance(event_type, str) or not isinstance(obj, Mapping):
        raise MalformedEventError("Event payload is missing type or data.object")

    created = payload.get("created")
    return ProviderEvent(
        event_id=str(payload.get("id") or ""),
        event_type=event_type,
        family=_family_for(event_type),
        created_at=from_timestamp(created) if isinstance(created, (int, float)) else None,
        obj=obj,
    )


def _dig(value: Any, *path: str | int) -> Any:
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, list) or len(value) <= step:
                return None
        elif not isinstance(value, Mapping):
            return None
        value = value[step] if isinstance(step, int) else value.get(step)
    return value


def _object_id(value: Any) -> str | None:
    """IDs arrive either as strings or as expanded objects."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return _object_id(value.get("id"))
    return None


def _from_metadata(metadata: Any, keys: tuple[str, ...]) -> str | None:
    if not isinstance(metadata, Mapping):
        return None
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# =============================================================================
# Extraction strategies
# =============================================================================

@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    families: frozenset[EventFamily]
    extract: Callable[[Mapping[str, Any]], str | None]


@dataclass(frozen=True)
class Extracted:
    value: str | None
    strategy: str | None = None


CHECKOUT_ONLY = frozenset({EventFamily.checkout})
SUBSCRIPTION_ONLY = frozenset({EventFamily.subscription})
CHECKOUT_AND_SUBSCRIPTION = frozenset({EventFamily.checkout, EventFamily.subscription})


def _custom_field_user_id(obj: Mapping[str, Any]) -> str | None:
    fields = obj.get("custom_fields")
    if not isinstance(fields, list):
        return None
    for item in fields:
        if not isinstance(item, Mapping) or str(item.get("key", "")).lower() not in {"user_id", "userid"}:
            continue
        for kind in ("text", "numeric", "dropdown"):
            value = _dig(item, kind, "value")
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _subscription_item_metadata(obj: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    items = _dig(obj, "items", "data")
    if not isinstance(items, list):
        return None
    for item in items:
        value = _from_metadata(_dig(item, "metadata"), keys)
        if value:
            return value
    return None


USER_ID_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy(
        "metadata",
        CHECKOUT_AND_SUBSCRIPTION,
        lambda obj: _from_metadata(obj.get("metadata"), USER_ID_KEYS),
    ),
    ExtractionStrategy(
        "client_reference_id",
        CHECKOUT_ONLY,
        lambda obj: _object_id(obj.get("client_reference_id")),
    ),
    ExtractionStrategy("custom_fields", CHECKOUT_ONLY, _custom_field_user_id),
    ExtractionStrategy(
        "expanded_subscription_metadata",
        CHECKOUT_ONLY,
        lambda obj: _from_metadata(_dig(obj, "subscription", "metadata"), USER_ID_KEYS),
    ),
    ExtractionStrategy(
        "subscription_item_metadata",
        SUBSCRIPTION_ONLY,
        lambda obj: _subscription_item_metadata(obj, USER_ID_KEYS),
    ),
    ExtractionStrategy(
        "subscription_details_metadata",
        CHECKOUT_AND_SUBSCRIPTION,
        lambda obj: _from_metadata(_dig(obj, "subscription_details", "metadata"), USER_ID_KEYS),
    ),
    ExtractionStrategy(
        "parent_subscription_details_metadata",
        CHECKOUT_AND_SUBSCRIPTION,
        lambda obj: _from_metadata(
            _dig(obj, "parent", "subscription_details", "metadata"), USER_ID_KEYS
        ),
    ),
    ExtractionStrategy(
        "expanded_customer_metadata",
        CHECKOUT_AND_SUBSCRIPTION,
        lambda obj: _from_metadata(_dig(obj, "customer", "metadata"), USER_ID_KEYS),
    ),
)

# Line items win over metadata: a plan change made in the billing portal
# updates the items but not the metadata written at checkout.
PRODUCT_ID_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy(
        "subscription_items",
        SUBSCRIPTION_ONLY,
        lambda obj: _object_id(_dig(obj, "items", "data", 0, "price", "product")),
    ),
    ExtractionStrategy(
        "legacy_plan",
        SUBSCRIPTION_ONLY,
        lambda obj: _object_id(_dig(obj, "plan", "product")),
    ),
    ExtractionStrategy(
        "line_items",
        CHECKOUT_ONLY,
        lambda obj: _object_id(_dig(obj, "line_items", "data", 0, "price", "product")),
    ),
    ExtractionStrategy(
        "expanded_subscription_items",
        CHECKOUT_ONLY,
        lambda obj: _object_id(_dig(obj, "subscription", "items", "data", 0, "price", "product")),
    ),
    ExtractionStrategy(
        "metadata",
        CHECKOUT_AND_SUBSCRIPTION,
        lambda obj: _from_metadata(obj.get("metadata"), PRODUCT_ID_KEYS),
    ),
)


def first_match(
    strategies: tuple[ExtractionStrategy, ...],
    event: ProviderEvent,
) -> Extracted:
    """Run the strategies applicable to the event's family, in order."""
    for strategy in strategies:
        if event.family not in strategy.families:
            continue
        value = strategy.extract(event.obj)
        if value:
            return Extracted(value=value, strategy=strategy.name)
    return Extracted(value=None)


def extract_user_id(event: ProviderEvent) -> Extracted:
    return first_match(USER_ID_STRATEGIES, event)


def extract_product_id(event: ProviderEvent) -> Extracted:
    return first_match(PRODUCT_ID_STRATEGIES, event)


def extract_subscription_id(event: ProviderEvent) -> str | None:
    if event.family is EventFamily.subscription:
        return _object_id(event.obj.get("id"))
    if event.family is EventFamily.checkout:
        return _object_id(event.obj.get("subscription"))
    return None


def extract_period_end(event: ProviderEvent) -> datetime | None:
    if event.family is EventFamily.subscription:
        subscription = event.obj
    else:
        subscription = _dig(event.obj, "subscription")
        if not isinstance(subscription, Mapping):
            return None

    # Newer API versions moved the period onto the subscription items
    for path in (("current_period_end",), ("items", "data", 0, "current_period_end")):
        value = _dig(subscription, *path)
        if isinstance(value, (int, float)):
            return from_timestamp(value)
    return None


def classify(event: ProviderEvent) -> Transition:
    """Decide which state transition an event asks for."""
    # Delayed payment methods complete the session unpaid and confirm later
    if event.event_type == CHECKOUT_COMPLETED or event.event_type in CHECKOUT_UPDATED:
        if event.obj.get("payment_status") in CONFIRMED_PAYMENT_STATUSES:
            return Transition.activate
        return Transition.ignore

    if event.event_type == SUBSCRIPTION_DELETED:
        return Transition.revoke

    if event.family is EventFamily.subscription:
        status = event.obj.get("status")
        if status in ENDED_SUBSCRIPTION_STATUSES:
            return Transition.revoke
        if status in ACTIVE_SUBSCRIPTION_STATUSES:
            if event.obj.get("cancel_at_period_end") or event.obj.get("cancel_at"):
                return Transition.cancel
            return Transition.activate
        # incomplete, past_due, unpaid, paused: wait for a decisive event
        return Transition.ignore

    return Transition.ignore
