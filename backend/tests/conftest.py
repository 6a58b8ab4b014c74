"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
from unittest.mock import patch

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from database import database
from ledger.models.plans import BillingPeriod, PlanType
from fake_mongo import InMemoryStore
from ledger_helpers import PREMIUM_LIMITS, STARTER_LIMITS, insert_plan


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def store():
    """In-memory database wired in place of Motor for every ledger service."""
    store = InMemoryStore()
    with patch.object(database, "get_db", side_effect=store.get_db):
        yield store


@pytest.fixture
def plans(store):
    """Starter and Premium monthly tiers plus an SEO addon pack."""
    return {
        "starter": insert_plan(
            store,
            plan_id="PLN-STARTER",
            name="Starter Plan",
            price=1999,
            billing_period=BillingPeriod.MONTHLY,
            stripe_price_id="price_starter",
            limits=dict(STARTER_LIMITS),
            sort_order=1,
        ),
        "premium": insert_plan(
            store,
            plan_id="PLN-PREMIUM",
            name="Premium Plan",
            price=4999,
            billing_period=BillingPeriod.MONTHLY,
            stripe_price_id="price_premium",
            limits=dict(PREMIUM_LIMITS),
            sort_order=2,
        ),
        "seo_addon": insert_plan(
            store,
            plan_id="PLN-ADDON-SEO",
            name="Extra 10 SEO Audits",
            price=500,
            plan_type=PlanType.ADDON,
            billing_period=BillingPeriod.ONE_TIME,
            stripe_price_id="price_addon_seo",
            credits={"seo_audits": 10},
            sort_order=10,
        ),
    }


@pytest.fixture
def user(store):
    doc = {"user_id": "user-1", "email": "owner@example.com", "name": "Sam"}
    store.users.docs.append({**doc, "_id": "user-1"})
    return doc
