"""Builders for Stripe-shaped webhook payloads and signature headers."""
import hashlib
import hmac
import json
import time

WEBHOOK_SECRET = "whsec_test_chatmeter"

_counter = 0


def _next_id(prefix: str) -> str:
    global _counter
    _counter += 1
    return f"{prefix}_{_counter:06d}"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_request(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(event)
    headers = {"Stripe-Signature": sign(body, secret), "Content-Type": "application/json"}
    return body.encode("utf-8"), headers


def envelope(event_type: str, obj: dict, created: int | None = None) -> dict:
    return {
        "id": _next_id("evt"),
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }


def checkout_completed(
    user_id: str | None = "user-1",
    product_id: str | None = "prod_pro",
    subscription_id: str | None = "sub_123",
    created: int | None = None,
    payment_status: str = "paid",
    event_type: str = "checkout.session.completed",
    period_end: int | None = None,
) -> dict:
    metadata = {}
    if user_id:
        metadata["user_id"] = user_id
    if product_id:
        metadata["product_id"] = product_id
    obj = {
        "id": _next_id("cs"),
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": payment_status,
        "client_reference_id": user_id,
        "metadata": metadata,
        "subscription": subscription_id,
    }
    if period_end is not None:
        obj["subscription"] = {
            "id": subscription_id,
            "current_period_end": period_end,
            "metadata": metadata,
        }
    return envelope(event_type, obj, created)


def subscription_event(
    event_type: str = "customer.subscription.updated",
    status: str = "active",
    user_id: str | None = "user-1",
    product_id: str = "prod_pro",
    subscription_id: str = "sub_123",
    period_end: int | None = 1_900_000_000,
    cancel_at_period_end: bool = False,
    created: int | None = None,
    items_period_end: bool = False,
) -> dict:
    item = {
        "id": _next_id("si"),
        "price": {"id": _next_id("price"), "product": product_id},
    }
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"object": "list", "data": [item]},
    }
    if period_end is not None:
        if items_period_end:
            item["current_period_end"] = period_end
        else:
            obj["current_period_end"] = period_end
    return envelope(event_type, obj, created)
