"""
HTTP surface: webhook endpoint status codes, credits, plans, billing and admin.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from ledger.routes.credits import require_credit
from ledger.services.webhook_reconciler import webhook_reconciler
from ledger_helpers import (
    WEBHOOK_SECRET,
    auth_headers,
    checkout_event,
    encode,
    insert_subscription,
    sign_payload,
    stripe_subscription,
    ts,
)


@pytest.fixture
def webhook_env(store, plans, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    with patch.object(webhook_reconciler, "notifier", MagicMock()), \
         patch.object(webhook_reconciler, "_retrieve_subscription", AsyncMock(return_value=stripe_subscription())):
        yield


def _post_webhook(client, event, path="/api/webhook/stripe", signature=None):
    payload = encode(event)
    return client.post(
        path,
        content=payload,
        headers={"Stripe-Signature": signature or sign_payload(payload), "Content-Type": "application/json"},
    )


# =============================================================================
# Webhook endpoint
# =============================================================================

class TestWebhookEndpoint:
    def test_valid_event_is_acknowledged(self, client, store, webhook_env):
        response = _post_webhook(client, checkout_event("evt_http", ts(2025, 3, 1)))
        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["status"] == "processed"
        assert body["subscription_status"] == "active"

    def test_alias_path(self, client, store, webhook_env):
        response = _post_webhook(client, checkout_event("evt_alias", ts(2025, 3, 1)), path="/api/webhooks/stripe")
        assert response.status_code == 200

    def test_replay_is_acknowledged_as_duplicate(self, client, store, webhook_env):
        event = checkout_event("evt_http", ts(2025, 3, 1))
        _post_webhook(client, event)
        response = _post_webhook(client, event)
        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert len(store.subscriptions.docs) == 1

    def test_bad_signature_is_400(self, client, store, webhook_env):
        response = _post_webhook(client, checkout_event("evt_bad", ts(2025, 3, 1)), signature="t=1,v1=abc")
        assert response.status_code == 400
        assert store.webhook_events.docs == []

    def test_missing_signature_is_400(self, client, store, webhook_env):
        response = client.post("/api/webhook/stripe", content=encode(checkout_event("evt_bad", ts(2025, 3, 1))))
        assert response.status_code == 400

    def test_processing_failure_is_500_for_retry(self, client, store, webhook_env):
        event = checkout_event("evt_fail", ts(2025, 3, 1), plan_id="PLN-UNKNOWN")
        with patch.object(webhook_reconciler, "_retrieve_subscription",
                          AsyncMock(return_value=stripe_subscription(price_id="price_unknown"))):
            response = _post_webhook(client, event)
        assert response.status_code == 500
        assert store.webhook_events.docs[0]["status"] == "FAILED"

    def test_unexpected_error_is_500(self, client, store, webhook_env):
        with patch.object(webhook_reconciler, "_handle_event", AsyncMock(side_effect=RuntimeError("boom"))):
            response = _post_webhook(client, checkout_event("evt_boom", ts(2025, 3, 1)))
        assert response.status_code == 500
        assert store.webhook_events.docs[0]["status"] == "FAILED"


# =============================================================================
# Credits
# =============================================================================

class TestCreditRoutes:
    def test_requires_auth(self, client, store):
        assert client.get("/api/credits").status_code == 401
        assert client.get("/api/credits", headers={"Authorization": "Bearer not-a-token"}).status_code == 401

    def test_summary(self, client, store, plans):
        insert_subscription(store, used={"seo_audits": 3})
        response = client.get("/api/credits", headers=auth_headers())
        assert response.status_code == 200
        body = response.json()
        assert body["hasActiveSubscription"] is True
        assert body["credits"]["seo_audits"]["used"] == 3
        assert body["credits"]["seo_audits"]["available"] == 30

    def test_consume_grants_from_allowance(self, client, store, plans):
        insert_subscription(store)
        response = client.post("/api/credits/consume", json={"quota": "seo_audits"}, headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"granted": True, "source": "subscription", "quota": "seo_audits"}

    def test_consume_denied_is_403_with_upgrade_payload(self, client, store, plans):
        insert_subscription(store, used={"gbp_audits": 5})
        response = client.post("/api/credits/consume", json={"quota": "gbp_audits"}, headers=auth_headers())

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "INSUFFICIENT_CREDITS"
        assert body["credit_type"] == "gbp_audits"
        assert body["limit"] == 5
        assert body["used"] == 5
        assert body["addon_credits"] == 0
        assert "upgrade" in body["message"]

    def test_consume_rejects_bad_quota(self, client, store, plans):
        response = client.post("/api/credits/consume", json={"quota": "credits.$x"}, headers=auth_headers())
        assert response.status_code == 400

    def test_require_credit_dependency(self, store, plans):
        feature = FastAPI()

        @feature.post("/audit")
        async def run_audit(credit=Depends(require_credit("seo_audits"))):
            return {"source": credit.source.value}

        feature_client = TestClient(feature)
        assert feature_client.post("/audit", headers=auth_headers()).status_code == 403

        store.user_credits.docs.append({"_id": "w", "user_id": "user-1", "credits": {"seo_audits": 1}})

        response = feature_client.post("/audit", headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"source": "addon"}
        assert feature_client.post("/audit", headers=auth_headers()).status_code == 403


# =============================================================================
# Plans
# =============================================================================

class TestPlanRoutes:
    def test_list_active_plans_in_display_order(self, client, store, plans):
        response = client.get("/api/plans")
        assert response.status_code == 200
        assert [p["plan_id"] for p in response.json()] == ["PLN-STARTER", "PLN-PREMIUM", "PLN-ADDON-SEO"]

    def test_filter_by_type(self, client, store, plans):
        response = client.get("/api/plans", params={"plan_type": "addon"})
        assert [p["plan_id"] for p in response.json()] == ["PLN-ADDON-SEO"]

    def test_inactive_plans_are_hidden(self, client, store, plans):
        store.plans.docs[0]["is_active"] = False
        ids = [p["plan_id"] for p in client.get("/api/plans").json()]
        assert "PLN-STARTER" not in ids
        ids = [p["plan_id"] for p in client.get("/api/plans", params={"active": "false"}).json()]
        assert "PLN-STARTER" in ids

    def test_unknown_plan_is_404(self, client, store, plans):
        assert client.get("/api/plans/PLN-NOPE").status_code == 404


# =============================================================================
# Billing
# =============================================================================

class TestBillingRoutes:
    def test_checkout_session_carries_metadata(self, client, store, plans, user, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
        with patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_new")) as create_customer, \
             patch("stripe.checkout.Session.create",
                   return_value=SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1")) as create_session:
            response = client.post("/api/billing/checkout", json={"plan_id": "PLN-STARTER"}, headers=auth_headers())

        assert response.status_code == 200
        assert response.json() == {"checkout_url": "https://checkout.stripe.test/cs_1", "session_id": "cs_1"}
        create_customer.assert_called_once()
        params = create_session.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["customer"] == "cus_new"
        assert params["line_items"] == [{"price": "price_starter", "quantity": 1}]
        assert params["metadata"] == {"user_id": "user-1", "plan_id": "PLN-STARTER"}
        assert params["subscription_data"]["metadata"]["plan_id"] == "PLN-STARTER"
        assert store.users.docs[0]["stripe_customer_id"] == "cus_new"

    def test_addon_checkout_uses_payment_mode(self, client, store, plans, user, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
        store.users.docs[0]["stripe_customer_id"] = "cus_existing"
        with patch("stripe.Customer.create") as create_customer, \
             patch("stripe.checkout.Session.create",
                   return_value=SimpleNamespace(id="cs_2", url="https://checkout.stripe.test/cs_2")) as create_session:
            response = client.post("/api/billing/checkout", json={"plan_id": "PLN-ADDON-SEO"}, headers=auth_headers())

        assert response.status_code == 200
        create_customer.assert_not_called()
        params = create_session.call_args.kwargs
        assert params["mode"] == "payment"
        assert params["payment_intent_data"]["metadata"]["user_id"] == "user-1"

    def test_checkout_without_stripe_key_is_502(self, client, store, plans, user, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        response = client.post("/api/billing/checkout", json={"plan_id": "PLN-STARTER"}, headers=auth_headers())
        assert response.status_code == 502

    def test_checkout_unknown_plan_is_404(self, client, store, plans, user):
        response = client.post("/api/billing/checkout", json={"plan_id": "PLN-NOPE"}, headers=auth_headers())
        assert response.status_code == 404

    def test_portal_without_customer_is_404(self, client, store, plans, user):
        response = client.post("/api/billing/portal", headers=auth_headers())
        assert response.status_code == 404

    def test_current_subscription(self, client, store, plans):
        assert client.get("/api/billing/subscription", headers=auth_headers()).json() == {
            "has_subscription": False, "subscription": None,
        }
        insert_subscription(store, used={"seo_audits": 2})
        body = client.get("/api/billing/subscription", headers=auth_headers()).json()
        assert body["has_subscription"] is True
        assert body["subscription"]["plan_name"] == "Starter Plan"
        assert body["subscription"]["usage"]["seo_audits_used"] == 2


# =============================================================================
# Admin
# =============================================================================

class TestAdminRoutes:
    def test_non_admin_is_forbidden(self, client, store, plans):
        response = client.post("/api/admin/plans", json={"name": "X", "price": 100}, headers=auth_headers())
        assert response.status_code == 403

    def test_create_update_and_deactivate_plan(self, client, store, plans, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        admin = auth_headers("admin-1", "admin")

        response = client.post("/api/admin/plans", headers=admin, json={
            "name": "Agency Plan", "price": 9900, "limits": {"seo_audits": 500},
        })
        assert response.status_code == 201
        plan = response.json()
        assert plan["stripe_price_id"] == f"dev_price_{plan['plan_id']}"

        response = client.put(f"/api/admin/plans/{plan['plan_id']}", headers=admin, json={"price": 8900})
        assert response.status_code == 200
        assert response.json()["price"] == 8900

        response = client.delete(f"/api/admin/plans/{plan['plan_id']}", headers=admin)
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        actions = [d["action"] for d in store.audit_logs.docs]
        assert actions == ["PLAN_CREATED", "PLAN_UPDATED", "PLAN_DEACTIVATED"]

    def test_duplicate_plan_name_is_400(self, client, store, plans):
        response = client.post("/api/admin/plans", headers=auth_headers("admin-1", "admin"), json={
            "name": "Starter Plan", "price": 100,
        })
        assert response.status_code == 400

    def test_plan_in_use_cannot_be_deleted(self, client, store, plans):
        insert_subscription(store)
        response = client.delete("/api/admin/plans/PLN-STARTER", headers=auth_headers("admin-1", "super_admin"))
        assert response.status_code == 409

    def test_list_subscriptions_and_audit(self, client, store, plans):
        record = insert_subscription(store)
        admin = auth_headers("admin-1", "admin")

        body = client.get("/api/admin/subscriptions", params={"status": "active"}, headers=admin).json()
        assert body["pagination"]["total"] == 1
        assert body["subscriptions"][0]["subscription_id"] == record.subscription_id

        response = client.get(f"/api/admin/subscriptions/{record.subscription_id}/audit", headers=admin)
        assert response.status_code == 200
        assert response.json()["audit_logs"] == []

        assert client.get("/api/admin/subscriptions/SUB-NOPE/audit", headers=admin).status_code == 404
