"""Ledger Webhook Event Models

Stripe payloads are normalized into a small closed set of event variants
before any state transition runs. Field locations follow both the classic and
the 2025 (basil) API layouts, where period dates moved onto subscription items
and the invoice subscription id moved under `parent`.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class WebhookEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class WebhookEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"


EVENT_KIND_ALIASES = {
    "invoice.paid": WebhookEventKind.PAYMENT_SUCCEEDED,
}


def resolve_event_kind(event_type: Optional[str]) -> Optional[WebhookEventKind]:
    if not event_type:
        return None
    if event_type in EVENT_KIND_ALIASES:
        return EVENT_KIND_ALIASES[event_type]
    try:
        return WebhookEventKind(event_type)
    except ValueError:
        return None


class WebhookEventRecord(BaseModel):
    """Idempotency anchor, one per provider event id"""
    event_id: str
    type: str
    status: WebhookEventStatus = WebhookEventStatus.PROCESSING
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    attempts: int = 0
    error: Optional[str] = None
    related_user_id: Optional[str] = None
    related_subscription_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    model_config = {"extra": "ignore"}


def from_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(obj: Dict[str, Any]) -> Optional[str]:
    price = _first_item(obj).get("price") or {}
    if isinstance(price, str):
        return price
    return price.get("id")


def subscription_period(obj: Dict[str, Any]):
    item = _first_item(obj)
    start = obj.get("current_period_start") or item.get("current_period_start")
    end = obj.get("current_period_end") or item.get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = invoice.get("subscription")
    if not sub:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        sub = details.get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    return sub


class ProviderEvent(BaseModel):
    event_id: str
    kind: WebhookEventKind
    created: datetime


class CheckoutCompleted(ProviderEvent):
    user_id: str
    plan_id: Optional[str] = None
    price_id: Optional[str] = None
    customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    trial_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def from_stripe(cls, event: Dict[str, Any], stripe_subscription: Optional[Dict[str, Any]] = None) -> "CheckoutCompleted":
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        sub = stripe_subscription or {}
        start, end = subscription_period(sub)
        return cls(
            event_id=event["id"],
            kind=WebhookEventKind.CHECKOUT_COMPLETED,
            created=from_timestamp(event.get("created")),
            user_id=metadata["user_id"],
            plan_id=metadata.get("plan_id"),
            price_id=subscription_price_id(sub),
            customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
            payment_intent_id=session.get("payment_intent"),
            trial_end=from_timestamp(sub.get("trial_end")),
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=bool(sub.get("cancel_at_period_end", False)),
        )


class SubscriptionChanged(ProviderEvent):
    stripe_subscription_id: str
    provider_status: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    @classmethod
    def from_stripe(cls, event: Dict[str, Any]) -> "SubscriptionChanged":
        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}
        start, end = subscription_period(obj)
        kind = resolve_event_kind(event.get("type")) or WebhookEventKind.SUBSCRIPTION_UPDATED
        return cls(
            event_id=event["id"],
            kind=kind,
            created=from_timestamp(event.get("created")),
            stripe_subscription_id=obj["id"],
            provider_status=obj.get("status"),
            customer_id=obj.get("customer"),
            user_id=metadata.get("user_id"),
            plan_id=metadata.get("plan_id"),
            price_id=subscription_price_id(obj),
            current_period_start=start,
            current_period_end=end,
            trial_end=from_timestamp(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            canceled_at=from_timestamp(obj.get("canceled_at") or obj.get("ended_at")),
        )


class InvoiceEvent(ProviderEvent):
    invoice_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    @classmethod
    def from_stripe(cls, event: Dict[str, Any]) -> "InvoiceEvent":
        invoice = event["data"]["object"]
        return cls(
            event_id=event["id"],
            kind=resolve_event_kind(event.get("type")),
            created=from_timestamp(event.get("created")),
            invoice_id=invoice.get("id"),
            stripe_subscription_id=invoice_subscription_id(invoice),
            customer_id=invoice.get("customer"),
            amount=invoice.get("amount_paid") or invoice.get("amount_due"),
            currency=invoice.get("currency"),
        )
