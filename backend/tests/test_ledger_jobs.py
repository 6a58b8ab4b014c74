"""
Scheduled jobs, plan seeding, index setup and keyed locks.
"""
import asyncio
import importlib.util
from datetime import datetime, timezone, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from database import database
from fake_mongo import FakeCollection
from job_runner import run_lapsed_subscription_sweep, run_webhook_event_cleanup
from ledger.models.subscriptions import SubscriptionStatus
from ledger.services.keyed_lock import KeyedLock
from ledger.services.notifications import NotificationTemplate, notification_dispatcher
from ledger.services.subscription_service import subscription_service
from ledger_helpers import insert_subscription

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


def _load_seed_module():
    spec = importlib.util.spec_from_file_location("seed_plans", SCRIPTS_DIR / "seed_plans.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


# =============================================================================
# Lapsed subscription sweep
# =============================================================================

class TestLapsedSweep:
    @pytest.mark.asyncio
    async def test_soft_canceled_past_grace_is_canceled(self, store, plans):
        now = datetime.now(timezone.utc)
        lapsed = insert_subscription(store, cancel_at_period_end=True, current_period_end=now - timedelta(days=2))
        in_grace = insert_subscription(store, user_id="user-2", cancel_at_period_end=True,
                                       current_period_end=now - timedelta(hours=1))
        renewing = insert_subscription(store, user_id="user-3", current_period_end=now - timedelta(days=2))

        with patch.object(notification_dispatcher, "dispatch") as dispatch:
            result = await run_lapsed_subscription_sweep()

        assert result["count"] == 1
        assert (await subscription_service.get(lapsed.subscription_id)).status == SubscriptionStatus.CANCELED
        assert (await subscription_service.get(in_grace.subscription_id)).status == SubscriptionStatus.ACTIVE
        assert (await subscription_service.get(renewing.subscription_id)).status == SubscriptionStatus.ACTIVE
        dispatch.assert_called_once_with(NotificationTemplate.SUBSCRIPTION_CANCELED, "user-1")
        actions = {d["action"] for d in store.audit_logs.docs}
        assert {"SUBSCRIPTION_STATUS_CHANGED", "SUBSCRIPTION_LAPSED"} <= actions

    @pytest.mark.asyncio
    async def test_grace_is_configurable(self, store, plans, monkeypatch):
        monkeypatch.setenv("LAPSED_SUBSCRIPTION_GRACE_HOURS", "0")
        now = datetime.now(timezone.utc)
        insert_subscription(store, cancel_at_period_end=True, current_period_end=now - timedelta(minutes=5))

        with patch.object(notification_dispatcher, "dispatch"):
            result = await run_lapsed_subscription_sweep()
        assert result["count"] == 1

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, store, plans):
        insert_subscription(store, cancel_at_period_end=True,
                            current_period_end=datetime.now(timezone.utc) - timedelta(days=3))
        with patch.object(notification_dispatcher, "dispatch"):
            await run_lapsed_subscription_sweep()
            result = await run_lapsed_subscription_sweep()
        assert result["count"] == 0


@pytest.mark.asyncio
async def test_webhook_event_cleanup_keeps_recent_and_unfinished(store):
    now = datetime.now(timezone.utc)
    store.webhook_events.docs.extend([
        {"_id": "1", "event_id": "evt_old", "status": "PROCESSED", "processed_at": now - timedelta(days=120)},
        {"_id": "2", "event_id": "evt_new", "status": "PROCESSED", "processed_at": now - timedelta(days=1)},
        {"_id": "3", "event_id": "evt_failed", "status": "FAILED", "processed_at": None},
    ])
    result = await run_webhook_event_cleanup(retention_days=90)

    assert result["count"] == 1
    assert [d["event_id"] for d in store.webhook_events.docs] == ["evt_new", "evt_failed"]


# =============================================================================
# Seeding and indexes
# =============================================================================

@pytest.mark.asyncio
async def test_seed_plans_is_idempotent(store, monkeypatch):
    monkeypatch.setenv("STRIPE_PRICE_STARTER", "price_seed_starter")
    seed = _load_seed_module()

    first = await seed.seed_plans(store.db)
    plan_ids = {d["name"]: d["plan_id"] for d in store.plans.docs}
    second = await seed.seed_plans(store.db)

    assert first == {"created": 6, "updated": 0}
    assert second == {"created": 0, "updated": 6}
    assert {d["name"]: d["plan_id"] for d in store.plans.docs} == plan_ids
    starter = next(d for d in store.plans.docs if d["name"] == "Starter Plan")
    assert starter["stripe_price_id"] == "price_seed_starter"
    assert starter["limits"]["gbp_audits"] == 5


@pytest.mark.asyncio
async def test_seed_dry_run_writes_nothing(store):
    seed = _load_seed_module()
    assert await seed.seed_plans(store.db, dry_run=True) == {"created": 0, "updated": 0}
    assert store.plans.docs == []


@pytest.mark.asyncio
async def test_create_indexes_declares_unique_keys():
    names = ("plans", "subscriptions", "user_credits", "webhook_events", "users", "audit_logs")
    db = SimpleNamespace(**{name: FakeCollection(name) for name in names})

    with patch.object(database, "db", db):
        await database._create_indexes()

    def unique(collection):
        return {i["fields"] for i in collection.indexes if i["unique"]}

    assert ("event_id",) in unique(db.webhook_events)
    assert ("user_id",) in unique(db.user_credits)
    assert ("stripe_subscription_id",) in unique(db.subscriptions)
    assert ("plan_id",) in unique(db.plans)
    partial = next(i for i in db.subscriptions.indexes if i["fields"] == ("stripe_subscription_id",))
    assert partial["partial"] == {"stripe_subscription_id": {"$type": "string"}}


# =============================================================================
# Keyed locks
# =============================================================================

@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    order = []

    async def worker(name, key):
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a", "sub:1"), worker("b", "sub:1"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_different_keys_interleave():
    locks = KeyedLock()
    order = []

    async def worker(name, key):
        async with locks.hold(key, None):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a", "sub:1"), worker("b", "sub:2"))
    assert order[:2] == ["a-in", "b-in"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_released_on_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("user:1", "sub:1"):
            raise RuntimeError("handler failed")
    assert len(locks) == 0
    async with locks.hold("user:1"):
        pass
