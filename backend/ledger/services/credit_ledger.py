"""Ledger Credit Service

Addon balances per user and quota. Balances never expire, only grow through
addon purchases and only shrink through the consumption gate. Every mutation
is a single conditional MongoDB operation.
"""

from datetime import datetime, timezone
from typing import Dict, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from ledger.models.credits import UserCredits, validate_quota_name

logger = logging.getLogger(__name__)

# Grants remember the events that produced them so a replay cannot double-credit
APPLIED_GRANTS_KEPT = 200


class CreditLedger:
    """Addon credit balances."""

    def _get_db(self):
        return database.get_db()

    async def grant(self, user_id: str, quota: str, amount: int, reference_id: Optional[str] = None) -> bool:
        return await self.grant_many(user_id, {quota: amount}, reference_id=reference_id)

    async def grant_many(self, user_id: str, credits: Dict[str, int], reference_id: Optional[str] = None) -> bool:
        """Add addon credits in one upserting `$inc`.

        Returns False when `reference_id` was already applied for this user.
        """
        if not credits:
            raise ValueError("No credits to grant")
        for quota, amount in credits.items():
            validate_quota_name(quota)
            if not isinstance(amount, int) or amount <= 0:
                raise ValueError(f"Grant amount for {quota} must be a positive integer")

        db = self._get_db()
        now = datetime.now(timezone.utc)
        query = {"user_id": user_id}
        update = {
            "$inc": {f"credits.{q}": amount for q, amount in credits.items()},
            "$set": {"updated_at": now},
            "$setOnInsert": {"user_id": user_id, "created_at": now},
        }
        if reference_id:
            query["applied_grants"] = {"$ne": reference_id}
            update["$push"] = {"applied_grants": {"$each": [reference_id], "$slice": -APPLIED_GRANTS_KEPT}}

        try:
            await db.user_credits.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            # Either the wallet holds reference_id already, or a concurrent
            # upsert created the wallet first. Only the latter matches now.
            result = await db.user_credits.update_one(query, update)
            if result.matched_count == 0:
                logger.info(f"CREDIT_GRANT_DUPLICATE user_id={user_id} reference_id={reference_id}")
                return False

        logger.info(f"CREDIT_GRANTED user_id={user_id} credits={credits} reference_id={reference_id}")
        return True

    async def get_credits(self, user_id: str) -> UserCredits:
        db = self._get_db()
        doc = await db.user_credits.find_one({"user_id": user_id}, {"_id": 0})
        if not doc:
            return UserCredits(user_id=user_id)
        return UserCredits(**doc)

    async def balance(self, user_id: str, quota: str) -> int:
        validate_quota_name(quota)
        wallet = await self.get_credits(user_id)
        return wallet.balance(quota)

    async def consume_addon(self, user_id: str, quota: str) -> bool:
        """Take one addon unit if the balance is positive."""
        validate_quota_name(quota)
        db = self._get_db()
        result = await db.user_credits.find_one_and_update(
            {"user_id": user_id, f"credits.{quota}": {"$gt": 0}},
            {
                "$inc": {f"credits.{quota}": -1},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return result is not None


# Global instance
credit_ledger = CreditLedger()
