"""
Plan Seed Script

Upserts the default plan catalog (two subscription tiers and four addon
packs), keyed by plan name. Running it twice leaves the catalog unchanged.

Usage:
    python scripts/seed_plans.py [--dry-run]

Environment:
    MONGO_URL, DB_NAME - Required
    STRIPE_PRICE_STARTER, STRIPE_PRICE_PREMIUM,
    STRIPE_PRICE_ADDON_SEO, STRIPE_PRICE_ADDON_GEO,
    STRIPE_PRICE_ADDON_GBP, STRIPE_PRICE_ADDON_AI - Stripe price ids (optional)
"""
import os
import sys
import asyncio
import argparse
import logging
import uuid
from datetime import datetime, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import get_db_context
from ledger.models.plans import BillingPeriod, Plan, PlanType, plan_document

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def default_plans():
    return [
        Plan(
            name="Starter Plan",
            description="For freelancers and small sites",
            price=1999,
            currency="USD",
            plan_type=PlanType.SUBSCRIPTION,
            billing_period=BillingPeriod.MONTHLY,
            stripe_price_id=os.getenv("STRIPE_PRICE_STARTER"),
            features=["30 SEO audits per month", "10 local SEO audits", "5 GBP audits"],
            limits={"seo_audits": 30, "geo_audits": 10, "gbp_audits": 5, "ai_generations": 0},
            sort_order=1,
        ),
        Plan(
            name="Premium Plan",
            description="For agencies managing many locations",
            price=4999,
            currency="USD",
            plan_type=PlanType.SUBSCRIPTION,
            billing_period=BillingPeriod.MONTHLY,
            stripe_price_id=os.getenv("STRIPE_PRICE_PREMIUM"),
            features=["120 SEO audits per month", "40 local SEO audits", "20 GBP audits", "50 AI generations"],
            limits={"seo_audits": 120, "geo_audits": 40, "gbp_audits": 20, "ai_generations": 50},
            sort_order=2,
            is_popular=True,
        ),
        Plan(
            name="Extra 10 SEO Audits",
            price=500,
            plan_type=PlanType.ADDON,
            billing_period=BillingPeriod.ONE_TIME,
            stripe_price_id=os.getenv("STRIPE_PRICE_ADDON_SEO"),
            credits={"seo_audits": 10},
            sort_order=10,
        ),
        Plan(
            name="Extra 10 Local SEO Audits",
            price=500,
            plan_type=PlanType.ADDON,
            billing_period=BillingPeriod.ONE_TIME,
            stripe_price_id=os.getenv("STRIPE_PRICE_ADDON_GEO"),
            credits={"geo_audits": 10},
            sort_order=11,
        ),
        Plan(
            name="Extra 5 GBP Audits",
            price=500,
            plan_type=PlanType.ADDON,
            billing_period=BillingPeriod.ONE_TIME,
            stripe_price_id=os.getenv("STRIPE_PRICE_ADDON_GBP"),
            credits={"gbp_audits": 5},
            sort_order=12,
        ),
        Plan(
            name="Extra 50 AI Generations",
            price=1499,
            plan_type=PlanType.ADDON,
            billing_period=BillingPeriod.ONE_TIME,
            stripe_price_id=os.getenv("STRIPE_PRICE_ADDON_AI"),
            credits={"ai_generations": 50},
            sort_order=13,
        ),
    ]


async def seed_plans(db, dry_run: bool = False) -> dict:
    """Upsert every default plan by name. Existing plan ids are preserved."""
    created, updated = 0, 0
    now = datetime.now(timezone.utc)
    for plan in default_plans():
        doc = plan_document(plan)
        for key in ("plan_id", "created_at"):
            doc.pop(key)
        if not doc.get("stripe_price_id"):
            doc.pop("stripe_price_id")
        doc["updated_at"] = now

        existing = await db.plans.find_one({"name": plan.name}, {"_id": 0, "plan_id": 1})
        if dry_run:
            logger.info(f"[DRY RUN] Would {'update' if existing else 'create'} plan: {plan.name}")
            continue

        await db.plans.update_one(
            {"name": plan.name},
            {
                "$set": doc,
                "$setOnInsert": {"plan_id": f"PLN-{uuid.uuid4().hex[:12].upper()}", "created_at": now},
            },
            upsert=True,
        )
        if existing:
            updated += 1
            logger.info(f"Updated plan: {plan.name}")
        else:
            created += 1
            logger.info(f"Created plan: {plan.name}")

    return {"created": created, "updated": updated}


async def main():
    parser = argparse.ArgumentParser(description="Seed the default plan catalog")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without making them")
    args = parser.parse_args()

    async with get_db_context() as db:
        result = await seed_plans(db, dry_run=args.dry_run)
    logger.info(f"Seeding complete: {result['created']} created, {result['updated']} updated")


if __name__ == "__main__":
    asyncio.run(main())
