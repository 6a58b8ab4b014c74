"""Ledger Webhook Reconciler

Idempotent ingestion of Stripe events:
1. Verify the signature
2. Claim the event id in `webhook_events` (lease based)
3. Dispatch to the handler for its kind
4. Mark PROCESSED only after the mutation, FAILED otherwise

Stripe delivers at least once and in no particular order. Replays are
absorbed by the event claim; reordering by the `last_event_at` guard in the
subscription state transitions.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging
import os

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from ledger.exceptions import (
    EventInProgressError,
    InvalidSignatureError,
    PlanNotFoundError,
    ProviderUnavailableError,
)
from ledger.models.events import (
    CheckoutCompleted,
    InvoiceEvent,
    SubscriptionChanged,
    WebhookEventKind,
    WebhookEventStatus,
    resolve_event_kind,
)
from ledger.models.subscriptions import Subscription, SubscriptionStatus
from ledger.services import subscription_state as state
from ledger.services.credit_ledger import credit_ledger
from ledger.services.keyed_lock import KeyedLock
from ledger.services.notifications import NotificationTemplate, notification_dispatcher
from ledger.services.plan_catalog import plan_catalog
from ledger.services.subscription_service import subscription_service
from ledger.stripe_settings import configure_stripe, get_webhook_secret, get_webhook_tolerance
from models import AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 120

Notification = Tuple[NotificationTemplate, str, Dict[str, Any]]


def _lease_seconds() -> int:
    try:
        return int(os.getenv("WEBHOOK_LEASE_SECONDS", DEFAULT_LEASE_SECONDS))
    except ValueError:
        return DEFAULT_LEASE_SECONDS


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj or {})


class WebhookReconciler:
    """Stripe webhook handler with idempotency and out-of-order tolerance."""

    def __init__(self, notifier=None):
        self.notifier = notifier or notification_dispatcher
        self.locks = KeyedLock()
        self._handlers = {
            WebhookEventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            WebhookEventKind.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            WebhookEventKind.PAYMENT_FAILED: self._handle_payment_failed,
        }

    def _get_db(self):
        return database.get_db()

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.verify_event(payload, signature)
        return await self.process_event(event)

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header and parse the payload. No state is touched."""
        secret = get_webhook_secret()
        if not secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting webhook")
            raise InvalidSignatureError("Webhook secret is not configured")
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, secret, get_webhook_tolerance()).to_dict()
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise InvalidSignatureError("Invalid signature") from e
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            raise InvalidSignatureError("Invalid payload") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignatureError("Invalid payload")
        return event

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a verified event at most once."""
        event_id = event["id"]
        event_type = event.get("type")
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s",
            event_id, event_type, event.get("livemode"),
        )

        if not await self._claim(event_id, event_type):
            logger.info("WEBHOOK_DUPLICATE event_id=%s event_type=%s", event_id, event_type)
            return {"event_id": event_id, "status": "duplicate"}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await self._mark_failed(event_id, event_type, e)
            raise

        notifications: List[Notification] = result.pop("notifications", [])
        await self._mark_processed(event_id, result)
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s subscription_id=%s",
            event_id, event_type, result.get("user_id"), result.get("subscription_id"),
        )

        for template, user_id, context in notifications:
            self.notifier.dispatch(template, user_id, context)

        return {"event_id": event_id, "status": "processed", **result}

    # =========================================================================
    # Idempotency anchor
    # =========================================================================

    async def _claim(self, event_id: str, event_type: Optional[str]) -> bool:
        """Take the processing lease. False when the event was already processed."""
        db = self._get_db()
        now = datetime.now(timezone.utc)
        try:
            await db.webhook_events.find_one_and_update(
                {
                    "event_id": event_id,
                    "status": {"$ne": WebhookEventStatus.PROCESSED.value},
                    "$or": [{"locked_until": None}, {"locked_until": {"$lte": now}}],
                },
                {
                    "$set": {
                        "type": event_type,
                        "status": WebhookEventStatus.PROCESSING.value,
                        "locked_until": now + timedelta(seconds=_lease_seconds()),
                        "error": None,
                    },
                    "$inc": {"attempts": 1},
                    "$setOnInsert": {"received_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
            return True
        except DuplicateKeyError:
            existing = await db.webhook_events.find_one({"event_id": event_id}, {"_id": 0, "status": 1})
            if existing and existing.get("status") == WebhookEventStatus.PROCESSED.value:
                return False
            raise EventInProgressError(event_id)

    async def _mark_processed(self, event_id: str, result: Dict[str, Any]) -> None:
        db = self._get_db()
        await db.webhook_events.update_one(
            {"event_id": event_id},
            {
                "$set": {
                    "status": WebhookEventStatus.PROCESSED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "locked_until": None,
                    "related_user_id": result.get("user_id"),
                    "related_subscription_id": result.get("subscription_id"),
                    "result": {k: v for k, v in result.items() if isinstance(v, (str, int, bool, type(None)))},
                }
            },
        )

    async def _mark_failed(self, event_id: str, event_type: Optional[str], error: Exception) -> None:
        db = self._get_db()
        await db.webhook_events.update_one(
            {"event_id": event_id},
            {
                "$set": {
                    "status": WebhookEventStatus.FAILED.value,
                    "locked_until": None,
                    "error": f"{type(error).__name__}: {error}",
                }
            },
        )
        await create_audit_log(
            action=AuditAction.STRIPE_EVENT_FAILED,
            metadata={"event_id": event_id, "event_type": event_type, "error": str(error)},
        )

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Route event to the handler for its kind."""
        kind = resolve_event_kind(event.get("type"))
        handler = self._handlers.get(kind)
        if handler:
            return await handler(event)

        logger.info(f"Ignoring unhandled event type: {event.get('type')}")
        return {"handled": False}

    async def _handle_checkout_completed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        if not metadata.get("user_id"):
            logger.warning(
                "INCONSISTENT_EVENT event_id=%s reason=checkout_without_user_id session_id=%s",
                event["id"], session.get("id"),
            )
            return {"handled": False}

        stripe_subscription = None
        ext_id = session.get("subscription")
        if isinstance(ext_id, dict):
            stripe_subscription, ext_id = ext_id, ext_id.get("id")
            session = {**session, "subscription": ext_id}
            event = {**event, "data": {"object": session}}
        elif ext_id:
            stripe_subscription = await self._retrieve_subscription(ext_id)

        checkout = CheckoutCompleted.from_stripe(event, stripe_subscription)
        plan = await plan_catalog.resolve_plan(checkout.plan_id, checkout.price_id)

        if plan.is_addon():
            return await self._grant_addon(checkout, plan)

        async with self.locks.hold(f"user:{checkout.user_id}", f"sub:{ext_id}" if ext_id else None):
            record, superseded = await subscription_service.start_from_checkout(checkout, plan)

        notifications: List[Notification] = []
        if not superseded:
            notifications.append((
                NotificationTemplate.SUBSCRIPTION_STARTED,
                checkout.user_id,
                {"plan_name": plan.name, "status": record.status.value},
            ))
        return {
            "handled": True,
            "user_id": checkout.user_id,
            "subscription_id": record.subscription_id,
            "subscription_status": record.status.value,
            "superseded": superseded,
            "notifications": notifications,
        }

    async def _grant_addon(self, checkout: CheckoutCompleted, plan) -> Dict[str, Any]:
        credits = {quota: amount for quota, amount in plan.credits.items() if amount > 0}
        if not credits:
            logger.warning(f"Addon plan {plan.plan_id} grants no credits")
            return {"handled": True, "user_id": checkout.user_id}

        applied = await credit_ledger.grant_many(checkout.user_id, credits, reference_id=checkout.event_id)
        if not applied:
            return {"handled": True, "user_id": checkout.user_id, "granted": False}

        await create_audit_log(
            action=AuditAction.ADDON_CREDITS_GRANTED,
            user_id=checkout.user_id,
            resource_type="user_credits",
            resource_id=checkout.user_id,
            metadata={"plan_id": plan.plan_id, "credits": credits, "event_id": checkout.event_id},
        )
        summary = ", ".join(f"{amount} {quota.replace('_', ' ')}" for quota, amount in credits.items())
        return {
            "handled": True,
            "user_id": checkout.user_id,
            "granted": True,
            "notifications": [(
                NotificationTemplate.ADDON_CREDITS_GRANTED,
                checkout.user_id,
                {"plan_name": plan.name, "credits": summary},
            )],
        }

    async def _handle_subscription_updated(self, event: Dict[str, Any]) -> Dict[str, Any]:
        change = SubscriptionChanged.from_stripe(event)
        ext_id = change.stripe_subscription_id
        async with self.locks.hold(f"sub:{ext_id}", f"user:{change.user_id}" if change.user_id else None):
            record, changes = await subscription_service.apply_transition(ext_id, state.on_subscription_updated, change)
            if record is None:
                status = state.map_provider_status(change.provider_status)
                if status is None:
                    logger.info(f"Subscription {ext_id} is {change.provider_status} with no local record - waiting for checkout")
                    return {"handled": False}
                record = await self._insert_minimal(change, status, state.on_subscription_updated)
                if record is None:
                    return {"handled": False}
                changes = {}

        return {
            "handled": True,
            "user_id": record.user_id,
            "subscription_id": record.subscription_id,
            "subscription_status": record.status.value,
            "notifications": self._notifications_for(record, changes, change.kind),
        }

    async def _handle_subscription_deleted(self, event: Dict[str, Any]) -> Dict[str, Any]:
        change = SubscriptionChanged.from_stripe(event)
        ext_id = change.stripe_subscription_id
        async with self.locks.hold(f"sub:{ext_id}", f"user:{change.user_id}" if change.user_id else None):
            record, changes = await subscription_service.apply_transition(ext_id, state.on_subscription_deleted, change)
            if record is None:
                # Tombstone keeps a late checkout from resurrecting this subscription
                record = await self._insert_minimal(change, SubscriptionStatus.CANCELED, state.on_subscription_deleted)
                if record is None:
                    return {"handled": False}
                changes = {}

        return {
            "handled": True,
            "user_id": record.user_id,
            "subscription_id": record.subscription_id,
            "subscription_status": record.status.value,
            "notifications": self._notifications_for(record, changes, change.kind),
        }

    async def _handle_payment_succeeded(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return await self._handle_invoice(event, state.on_payment_succeeded)

    async def _handle_payment_failed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return await self._handle_invoice(event, state.on_payment_failed)

    async def _handle_invoice(self, event: Dict[str, Any], transition) -> Dict[str, Any]:
        invoice = InvoiceEvent.from_stripe(event)
        ext_id = invoice.stripe_subscription_id
        if not ext_id:
            logger.info(f"Invoice {invoice.invoice_id} is not tied to a subscription - ignoring")
            return {"handled": False}

        async with self.locks.hold(f"sub:{ext_id}"):
            record, changes = await subscription_service.apply_transition(ext_id, transition, invoice)
        if record is None:
            logger.info(f"No subscription record for {ext_id} (invoice {invoice.invoice_id}) - ignoring")
            return {"handled": False}

        return {
            "handled": True,
            "user_id": record.user_id,
            "subscription_id": record.subscription_id,
            "subscription_status": record.status.value,
            "notifications": self._notifications_for(record, changes, invoice.kind),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _insert_minimal(self, change: SubscriptionChanged, status: SubscriptionStatus, transition) -> Optional[Subscription]:
        """Record for an external subscription whose checkout has not arrived yet."""
        user_id = change.user_id or await self._user_for_customer(change.customer_id)
        if not user_id:
            logger.warning(
                "INCONSISTENT_EVENT event_id=%s stripe_subscription_id=%s reason=unknown_user",
                change.event_id, change.stripe_subscription_id,
            )
            return None

        try:
            plan = await plan_catalog.resolve_plan(change.plan_id, change.price_id)
        except PlanNotFoundError:
            # Stored plan-less; the checkout fills the plan in
            logger.warning(
                "INCONSISTENT_EVENT event_id=%s stripe_subscription_id=%s reason=unknown_plan price_id=%s",
                change.event_id, change.stripe_subscription_id, change.price_id,
            )
            plan = None

        logger.warning(
            "INCONSISTENT_EVENT event_id=%s stripe_subscription_id=%s user_id=%s reason=no_local_record status=%s",
            change.event_id, change.stripe_subscription_id, user_id, status.value,
        )
        record = state.minimal_subscription(change, user_id, plan, status)
        try:
            return await subscription_service.insert_minimal(record)
        except DuplicateKeyError:
            # Checkout for the same external id landed meanwhile
            existing, _ = await subscription_service.apply_transition(change.stripe_subscription_id, transition, change)
            return existing

    async def _user_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        db = self._get_db()
        user = await db.users.find_one({"stripe_customer_id": customer_id}, {"_id": 0, "user_id": 1})
        return user.get("user_id") if user else None

    async def _retrieve_subscription(self, stripe_subscription_id: str) -> Dict[str, Any]:
        configure_stripe()
        try:
            subscription = await asyncio.to_thread(stripe.Subscription.retrieve, stripe_subscription_id)
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Could not retrieve subscription {stripe_subscription_id}: {e}") from e
        return _as_dict(subscription)

    def _notifications_for(
        self,
        record: Subscription,
        changes: Optional[Dict[str, Any]],
        kind: WebhookEventKind,
    ) -> List[Notification]:
        if not changes:
            return []
        notifications: List[Notification] = []
        status = changes.get("status")
        if status == SubscriptionStatus.PAST_DUE.value:
            notifications.append((NotificationTemplate.PAYMENT_FAILED, record.user_id, {}))
        elif status == SubscriptionStatus.ACTIVE.value and kind == WebhookEventKind.PAYMENT_SUCCEEDED:
            notifications.append((NotificationTemplate.PAYMENT_RECOVERED, record.user_id, {}))
        elif status in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.UNPAID.value):
            notifications.append((NotificationTemplate.SUBSCRIPTION_CANCELED, record.user_id, {}))
        if changes.get("cancel_at_period_end") is True:
            period_end = record.current_period_end.date().isoformat() if record.current_period_end else "the end of the period"
            notifications.append((
                NotificationTemplate.CANCELLATION_SCHEDULED,
                record.user_id,
                {"period_end": period_end},
            ))
        return notifications


# Global instance
webhook_reconciler = WebhookReconciler()
