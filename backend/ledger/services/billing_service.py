"""Ledger Billing Service

Thin pass-through to Stripe Checkout and the Billing Portal. Entitlements are
never changed here; they follow from the webhook that Stripe sends once the
customer pays.
"""

from datetime import datetime, timezone
from typing import Dict, Any
import asyncio
import logging

import stripe

from database import database
from ledger.exceptions import ProviderUnavailableError, SubscriptionNotFoundError, UserNotFoundError
from ledger.services.plan_catalog import plan_catalog
from ledger.stripe_settings import configure_stripe, get_client_url
from models import AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class BillingService:
    def _get_db(self):
        return database.get_db()

    async def create_checkout_session(self, user_id: str, plan_id: str) -> Dict[str, Any]:
        """
        Create a Stripe Checkout session for a plan.

        One-time plans (addons, lifetime) use payment mode; recurring plans use
        subscription mode. `user_id` and `plan_id` travel in the metadata and
        are what the webhook reconciler keys on.

        Returns:
            Dict with checkout_url and session_id
        """
        db = self._get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
        if not user:
            raise UserNotFoundError(user_id)
        plan = await plan_catalog.get_plan(plan_id)
        if not plan.stripe_price_id:
            raise ValueError(f"Plan {plan_id} has no Stripe price configured")

        configure_stripe()
        metadata = {"user_id": user_id, "plan_id": plan.plan_id}
        mode = plan.checkout_mode()
        client_url = get_client_url()
        session_params = {
            "mode": mode,
            "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
            "success_url": f"{client_url}/checkout/success?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{client_url}/checkout/cancel?canceled=true",
            "metadata": metadata,
            "client_reference_id": user_id,
        }
        if mode == "subscription":
            session_params["subscription_data"] = {"metadata": metadata}
        else:
            session_params["payment_intent_data"] = {"metadata": metadata}

        try:
            customer_id = await self._ensure_customer(user)
            session_params["customer"] = customer_id
            session = await asyncio.to_thread(stripe.checkout.Session.create, **session_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for user {user_id}: {e}")
            raise ProviderUnavailableError(f"Failed to create checkout session: {e}") from e

        logger.info(f"Checkout session created for user {user_id}: {session.id} plan={plan.plan_id} mode={mode}")
        await create_audit_log(
            action=AuditAction.CHECKOUT_SESSION_CREATED,
            user_id=user_id,
            resource_type="plan",
            resource_id=plan.plan_id,
            metadata={"session_id": session.id, "mode": mode},
        )
        return {"checkout_url": session.url, "session_id": session.id}

    async def create_portal_session(self, user_id: str) -> Dict[str, Any]:
        db = self._get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
        if not user:
            raise UserNotFoundError(user_id)
        customer_id = user.get("stripe_customer_id")
        if not customer_id:
            raise SubscriptionNotFoundError("No billing account found for this user")

        configure_stripe()
        try:
            portal_session = await asyncio.to_thread(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=f"{get_client_url()}/dashboard",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal error for user {user_id}: {e}")
            raise ProviderUnavailableError(f"Failed to create billing portal session: {e}") from e

        logger.info(f"Billing portal session created for user {user_id}")
        return {"portal_url": portal_session.url}

    async def _ensure_customer(self, user: Dict[str, Any]) -> str:
        if user.get("stripe_customer_id"):
            return user["stripe_customer_id"]

        customer = await asyncio.to_thread(
            stripe.Customer.create,
            email=user.get("email"),
            name=user.get("name"),
            metadata={"user_id": user["user_id"]},
        )
        db = self._get_db()
        await db.users.update_one(
            {"user_id": user["user_id"]},
            {"$set": {"stripe_customer_id": customer.id, "updated_at": datetime.now(timezone.utc)}},
        )
        return customer.id


# Global instance
billing_service = BillingService()
