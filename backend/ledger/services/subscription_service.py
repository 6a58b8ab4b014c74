"""Ledger Subscription Service

Persists the transitions computed in subscription_state:
- lifecycle writes are compare-and-swap on `version`
- usage resets are compare-and-swap on `usage.last_reset`
- usage increments are guarded by `used < limit`
- at most one non-terminal record per user
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from ledger.exceptions import ConcurrentModificationError
from ledger.models.events import CheckoutCompleted, SubscriptionChanged
from ledger.models.plans import Plan
from ledger.models.subscriptions import (
    NON_TERMINAL_VALUES,
    Subscription,
    SubscriptionStatus,
    usage_field,
)
from ledger.services import subscription_state as state
from models import AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


class SubscriptionService:
    """Subscription records and usage counters."""

    def _get_db(self):
        return database.get_db()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current(self, user_id: str) -> Optional[Subscription]:
        """The user's non-terminal subscription, if any."""
        db = self._get_db()
        doc = await db.subscriptions.find_one(
            {"user_id": user_id, "status": {"$in": NON_TERMINAL_VALUES}},
            {"_id": 0},
            sort=[("last_event_at", -1), ("created_at", -1)],
        )
        return Subscription(**doc) if doc else None

    async def get_by_external_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        db = self._get_db()
        doc = await db.subscriptions.find_one({"stripe_subscription_id": stripe_subscription_id}, {"_id": 0})
        return Subscription(**doc) if doc else None

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        db = self._get_db()
        doc = await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0})
        return Subscription(**doc) if doc else None

    async def list_subscriptions(
        self,
        status: Optional[str] = None,
        plan_id: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        db = self._get_db()
        query: Dict[str, Any] = {}
        if status:
            query["status"] = SubscriptionStatus(status).value
        if plan_id:
            query["plan_id"] = plan_id
        if user_id:
            query["user_id"] = user_id
        page = max(1, page)
        limit = max(1, min(limit, 100))

        total = await db.subscriptions.count_documents(query)
        docs = await db.subscriptions.find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
        return {
            "subscriptions": [Subscription(**d) for d in docs],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    # ------------------------------------------------------------------
    # Lifecycle writes
    # ------------------------------------------------------------------

    async def start_from_checkout(self, checkout: CheckoutCompleted, plan: Plan) -> Tuple[Subscription, bool]:
        """Create (or complete) the subscription bought by a checkout.

        Returns (record, superseded). A superseded checkout is older than the
        user's current record and is stored as canceled history.
        """
        db = self._get_db()
        existing = None
        if checkout.stripe_subscription_id:
            existing = await self.get_by_external_id(checkout.stripe_subscription_id)
            if existing and existing.is_terminal():
                logger.info(
                    f"STALE_EVENT_IGNORED event_id={checkout.event_id} subscription_id={existing.subscription_id} "
                    f"reason=already_terminal"
                )
                return existing, True

        current = await self.get_current(checkout.user_id)
        if current and existing and current.subscription_id == existing.subscription_id:
            current = None
        if current and state.is_stale(current, checkout.created):
            logger.info(
                f"STALE_EVENT_IGNORED event_id={checkout.event_id} user_id={checkout.user_id} "
                f"current={current.subscription_id} reason=older_checkout"
            )
            if existing:
                record = await self.apply_changes(
                    existing.subscription_id,
                    lambda s: None if s.is_terminal() else {
                        "status": SubscriptionStatus.CANCELED.value,
                        "canceled_at": datetime.now(timezone.utc),
                    },
                )
                return record or existing, True
            record = state.new_subscription(checkout, plan, status=SubscriptionStatus.CANCELED)
            await db.subscriptions.insert_one(record.to_document())
            return record, True

        keep = existing.subscription_id if existing else None
        await self.terminalize_others(checkout.user_id, keep, reason=f"checkout {checkout.event_id}")

        if existing:
            record = await self.apply_changes(
                existing.subscription_id,
                lambda s: state.on_checkout_for_existing(s, checkout, plan),
            )
            record = record or existing
        else:
            record = state.new_subscription(checkout, plan)
            try:
                await db.subscriptions.insert_one(record.to_document())
            except DuplicateKeyError:
                # An update for the same external id created the record meanwhile
                existing = await self.get_by_external_id(checkout.stripe_subscription_id)
                record = await self.apply_changes(
                    existing.subscription_id,
                    lambda s: state.on_checkout_for_existing(s, checkout, plan),
                )
                record = record or existing

        await self.enforce_single_current(checkout.user_id)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            user_id=checkout.user_id,
            resource_type="subscription",
            resource_id=record.subscription_id,
            metadata={
                "plan_id": plan.plan_id,
                "status": record.status.value,
                "event_id": checkout.event_id,
                "stripe_subscription_id": checkout.stripe_subscription_id,
            },
        )
        return record, False

    async def insert_minimal(self, record: Subscription) -> Subscription:
        """Insert a record built from an event that outran its checkout."""
        db = self._get_db()
        if not record.is_terminal():
            await self.terminalize_others(record.user_id, None, reason=f"external {record.stripe_subscription_id}")
        await db.subscriptions.insert_one(record.to_document())
        if not record.is_terminal():
            await self.enforce_single_current(record.user_id)
        return record

    async def apply_transition(
        self,
        stripe_subscription_id: str,
        transition: Callable[[Subscription, Any], Optional[Dict[str, Any]]],
        event: Any,
    ) -> Tuple[Optional[Subscription], Optional[Dict[str, Any]]]:
        """Apply `transition(record, event)` to the record with this external id.

        Returns (record, changes); record is None when no record exists and
        changes is None when the transition declined the event.
        """
        current = await self.get_by_external_id(stripe_subscription_id)
        if current is None:
            return None, None
        applied: Dict[str, Any] = {}

        def _capture(record: Subscription):
            changes = transition(record, event)
            applied.clear()
            if changes:
                applied.update(changes)
            return changes

        record = await self.apply_changes(current.subscription_id, _capture, current=current)
        if not applied:
            if state.is_stale(current, event.created):
                logger.info(f"STALE_EVENT_IGNORED event_id={event.event_id} subscription_id={current.subscription_id}")
            return record or current, None
        return record, applied

    async def apply_changes(
        self,
        subscription_id: str,
        compute: Callable[[Subscription], Optional[Dict[str, Any]]],
        current: Optional[Subscription] = None,
    ) -> Optional[Subscription]:
        """Compare-and-swap loop on `version`. Re-reads and recomputes on conflict."""
        db = self._get_db()
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            if current is None:
                current = await self.get(subscription_id)
                if current is None:
                    return None
            changes = compute(current)
            if not changes:
                return current

            changes = dict(changes)
            changes["updated_at"] = datetime.now(timezone.utc)
            doc = await db.subscriptions.find_one_and_update(
                {"subscription_id": subscription_id, "version": current.version},
                {"$set": changes, "$inc": {"version": 1}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                updated = Subscription(**doc)
                if "status" in changes and changes["status"] != current.status.value:
                    await self._audit_status_change(current, updated)
                return updated

            logger.info(f"SUBSCRIPTION_CAS_CONFLICT subscription_id={subscription_id} attempt={attempt}")
            current = None
        raise ConcurrentModificationError(subscription_id, MAX_CAS_ATTEMPTS)

    async def terminalize_others(self, user_id: str, keep_subscription_id: Optional[str], reason: str) -> int:
        """Cancel every non-terminal record of the user except `keep_subscription_id`."""
        db = self._get_db()
        query: Dict[str, Any] = {"user_id": user_id, "status": {"$in": NON_TERMINAL_VALUES}}
        if keep_subscription_id:
            query["subscription_id"] = {"$ne": keep_subscription_id}
        now = datetime.now(timezone.utc)
        result = await db.subscriptions.update_many(
            query,
            {
                "$set": {"status": SubscriptionStatus.CANCELED.value, "canceled_at": now, "updated_at": now},
                "$inc": {"version": 1},
            },
        )
        if result.modified_count:
            logger.info(f"SUBSCRIPTION_REPLACED user_id={user_id} canceled={result.modified_count} reason={reason}")
        return result.modified_count

    async def enforce_single_current(self, user_id: str) -> None:
        """Keep only the newest non-terminal record when workers raced on inserts."""
        db = self._get_db()
        docs = await db.subscriptions.find(
            {"user_id": user_id, "status": {"$in": NON_TERMINAL_VALUES}},
            {"_id": 0},
        ).to_list(20)
        if len(docs) <= 1:
            return
        records = [Subscription(**d) for d in docs]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        records.sort(
            key=lambda s: (state.as_utc(s.last_event_at) or epoch, state.as_utc(s.created_at), s.subscription_id),
            reverse=True,
        )
        winner = records[0]
        logger.warning(f"SUBSCRIPTION_DUPLICATE_CURRENT user_id={user_id} keep={winner.subscription_id} count={len(records)}")
        await self.terminalize_others(user_id, winner.subscription_id, reason="duplicate current")

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    async def ensure_usage_current(self, subscription: Subscription, plan: Plan, now: Optional[datetime] = None) -> Subscription:
        """Apply a due monthly reset. Exactly one reset lands per boundary."""
        now = now or datetime.now(timezone.utc)
        boundary = state.usage_reset_boundary(subscription.usage.last_reset, plan.billing_period, now)
        if boundary is None:
            return subscription

        db = self._get_db()
        counters = set(subscription.usage.counter_fields()) | {usage_field(q) for q in plan.limits}
        reset = {f"usage.{field}": 0 for field in counters}
        reset["usage.last_reset"] = boundary

        doc = await db.subscriptions.find_one_and_update(
            {"subscription_id": subscription.subscription_id, "usage.last_reset": subscription.usage.last_reset},
            {"$set": reset},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            logger.info(f"USAGE_RESET subscription_id={subscription.subscription_id} boundary={boundary.isoformat()}")
            return Subscription(**doc)

        # Lost the race: another reader already reset this boundary
        fresh = await self.get(subscription.subscription_id)
        return fresh or subscription

    async def increment_usage(self, subscription: Subscription, quota: str, limit: int) -> bool:
        """Count one unit against the allowance while `used < limit`."""
        if limit <= 0:
            return False
        db = self._get_db()
        field = f"usage.{usage_field(quota)}"
        result = await db.subscriptions.find_one_and_update(
            {
                "subscription_id": subscription.subscription_id,
                "status": {"$in": NON_TERMINAL_VALUES},
                "usage.last_reset": subscription.usage.last_reset,
                "$or": [{field: {"$lt": limit}}, {field: {"$exists": False}}],
            },
            {"$inc": {field: 1}},
            projection={"_id": 0, "subscription_id": 1},
            return_document=ReturnDocument.AFTER,
        )
        return result is not None

    # ------------------------------------------------------------------
    # Lapsed sweep
    # ------------------------------------------------------------------

    async def sweep_lapsed(self, now: Optional[datetime] = None, grace: timedelta = timedelta(hours=24)) -> List[Subscription]:
        """Cancel soft-canceled records whose period ended more than `grace` ago."""
        db = self._get_db()
        now = now or datetime.now(timezone.utc)
        cutoff = now - grace
        docs = await db.subscriptions.find(
            {
                "status": {"$in": [
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.TRIAL.value,
                    SubscriptionStatus.PAST_DUE.value,
                ]},
                "cancel_at_period_end": True,
                "current_period_end": {"$lte": cutoff},
            },
            {"_id": 0},
        ).to_list(500)

        lapsed = []
        for doc in docs:
            record = Subscription(**doc)
            try:
                updated = await self.apply_changes(
                    record.subscription_id,
                    lambda s: state.on_period_lapsed(s, cutoff),
                    current=record,
                )
            except ConcurrentModificationError as e:
                logger.warning(f"Lapsed sweep skipped {record.subscription_id}: {e}")
                continue
            if updated and updated.status == SubscriptionStatus.CANCELED and updated.version != record.version:
                lapsed.append(updated)
        return lapsed

    async def _audit_status_change(self, before: Subscription, after: Subscription) -> None:
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_STATUS_CHANGED,
            user_id=after.user_id,
            resource_type="subscription",
            resource_id=after.subscription_id,
            before_state={"status": before.status.value},
            after_state={"status": after.status.value},
            metadata={"stripe_subscription_id": after.stripe_subscription_id},
        )


# Global instance
subscription_service = SubscriptionService()
