"""Ledger Plan Catalog

Read access for the reconciler and gate, plus admin CRUD. Runtime flows never
mutate plans. Creating a plan without a Stripe price registers the product and
price with Stripe when a secret key is configured.
"""

from datetime import datetime, timezone
from typing import Optional, List
import asyncio
import logging

import stripe
from pymongo import ReturnDocument

from database import database
from ledger.exceptions import PlanInUseError, PlanNotFoundError, ProviderUnavailableError
from ledger.models.plans import BillingPeriod, Plan, PlanCreate, PlanType, PlanUpdate, plan_document
from ledger.models.subscriptions import NON_TERMINAL_VALUES
from ledger.stripe_settings import get_stripe_api_key

logger = logging.getLogger(__name__)

STRIPE_INTERVALS = {
    BillingPeriod.MONTHLY: "month",
    BillingPeriod.YEARLY: "year",
}



class PlanCatalog:
    """Plan lookups and administration."""

    def _get_db(self):
        return database.get_db()

    async def get_plan(self, plan_id: str, include_inactive: bool = False) -> Plan:
        db = self._get_db()
        query = {"plan_id": plan_id}
        if not include_inactive:
            query["is_active"] = True
        doc = await db.plans.find_one(query, {"_id": 0})
        if not doc:
            raise PlanNotFoundError(plan_id=plan_id)
        return Plan(**doc)

    async def get_plan_by_price_id(self, price_id: str, include_inactive: bool = False) -> Plan:
        db = self._get_db()
        query = {"stripe_price_id": price_id}
        if not include_inactive:
            query["is_active"] = True
        doc = await db.plans.find_one(query, {"_id": 0})
        if not doc:
            raise PlanNotFoundError(price_id=price_id)
        return Plan(**doc)

    async def resolve_plan(
        self,
        plan_id: Optional[str] = None,
        price_id: Optional[str] = None,
        include_inactive: bool = True,
    ) -> Plan:
        """Plan by id, falling back to the Stripe price id."""
        if plan_id:
            try:
                return await self.get_plan(plan_id, include_inactive=include_inactive)
            except PlanNotFoundError:
                if not price_id:
                    raise
        if price_id:
            return await self.get_plan_by_price_id(price_id, include_inactive=include_inactive)
        raise PlanNotFoundError(plan_id=plan_id, price_id=price_id)

    async def list_plans(self, active_only: bool = False, plan_type: Optional[PlanType] = None) -> List[Plan]:
        db = self._get_db()
        query = {}
        if active_only:
            query["is_active"] = True
        if plan_type:
            query["plan_type"] = PlanType(plan_type).value
        docs = await db.plans.find(query, {"_id": 0}).sort([("sort_order", 1), ("price", 1)]).to_list(200)
        return [Plan(**d) for d in docs]

    async def create_plan(self, data: PlanCreate) -> Plan:
        db = self._get_db()
        existing = await db.plans.find_one({"name": data.name}, {"_id": 0, "plan_id": 1})
        if existing:
            raise ValueError(f"Plan with name '{data.name}' already exists")

        plan = Plan(**data.model_dump())
        if not plan.stripe_price_id:
            await self._register_stripe_price(plan)

        await db.plans.insert_one(plan_document(plan))
        logger.info(f"PLAN_CREATED plan_id={plan.plan_id} name={plan.name} price_id={plan.stripe_price_id}")
        return plan

    async def update_plan(self, plan_id: str, data: PlanUpdate) -> Plan:
        db = self._get_db()
        current = await self.get_plan(plan_id, include_inactive=True)
        changes = data.model_dump(exclude_none=True)
        if "name" in changes and changes["name"] != current.name:
            clash = await db.plans.find_one({"name": changes["name"], "plan_id": {"$ne": plan_id}}, {"_id": 0, "plan_id": 1})
            if clash:
                raise ValueError(f"Plan with name '{changes['name']}' already exists")
        changes["updated_at"] = datetime.now(timezone.utc)

        doc = await db.plans.find_one_and_update(
            {"plan_id": plan_id},
            {"$set": changes},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise PlanNotFoundError(plan_id=plan_id)
        logger.info(f"PLAN_UPDATED plan_id={plan_id} fields={sorted(changes)}")
        return Plan(**doc)

    async def delete_plan(self, plan_id: str) -> Plan:
        """Deactivate a plan. Refused while any live subscription references it."""
        db = self._get_db()
        await self.get_plan(plan_id, include_inactive=True)
        in_use = await db.subscriptions.count_documents(
            {"plan_id": plan_id, "status": {"$in": NON_TERMINAL_VALUES}}
        )
        if in_use:
            raise PlanInUseError(plan_id, in_use)

        doc = await db.plans.find_one_and_update(
            {"plan_id": plan_id},
            {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc)}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"PLAN_DEACTIVATED plan_id={plan_id}")
        return Plan(**doc)

    async def _register_stripe_price(self, plan: Plan) -> None:
        api_key = get_stripe_api_key()
        if not api_key:
            # Local development without Stripe
            plan.stripe_product_id = plan.stripe_product_id or f"dev_prod_{plan.plan_id}"
            plan.stripe_price_id = f"dev_price_{plan.plan_id}"
            logger.warning(f"Stripe not configured - using placeholder price for plan {plan.plan_id}")
            return

        stripe.api_key = api_key
        try:
            if not plan.stripe_product_id:
                product = await asyncio.to_thread(
                    stripe.Product.create,
                    name=plan.name,
                    description=plan.description or None,
                    metadata={"plan_id": plan.plan_id, "plan_type": plan.plan_type.value},
                )
                plan.stripe_product_id = product["id"]

            price_params = {
                "product": plan.stripe_product_id,
                "unit_amount": plan.price,
                "currency": plan.currency.lower(),
                "metadata": {"plan_id": plan.plan_id},
            }
            if plan.billing_period in STRIPE_INTERVALS:
                price_params["recurring"] = {"interval": STRIPE_INTERVALS[plan.billing_period]}
            price = await asyncio.to_thread(stripe.Price.create, **price_params)
            plan.stripe_price_id = price["id"]
        except stripe.StripeError as e:
            logger.error(f"Stripe product/price creation failed for plan {plan.name}: {e}")
            raise ProviderUnavailableError(f"Stripe error: {e}") from e


# Global instance
plan_catalog = PlanCatalog()
