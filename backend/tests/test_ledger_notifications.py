"""Best-effort notification delivery."""
from unittest.mock import MagicMock

import pytest

from ledger.services.notifications import NotificationDispatcher, NotificationTemplate


@pytest.fixture
def dispatcher():
    dispatcher = NotificationDispatcher()
    dispatcher.client = MagicMock()
    dispatcher._client_checked = True
    return dispatcher


@pytest.mark.asyncio
async def test_sends_rendered_template(store, user, dispatcher, monkeypatch):
    monkeypatch.setenv("EMAIL_SENDER", "billing@ledger.test")
    dispatcher.dispatch(NotificationTemplate.ADDON_CREDITS_GRANTED, "user-1",
                        {"plan_name": "Extra 10 SEO Audits", "credits": "10 seo audits"})
    await dispatcher.drain()

    kwargs = dispatcher.client.emails.send.call_args.kwargs
    assert kwargs["To"] == "owner@example.com"
    assert kwargs["From"] == "billing@ledger.test"
    assert kwargs["Tag"] == "addon-credits-granted"
    assert "Hi Sam" in kwargs["TextBody"]
    assert "10 seo audits" in kwargs["TextBody"]


@pytest.mark.asyncio
async def test_missing_email_skips_delivery(store, dispatcher):
    dispatcher.dispatch(NotificationTemplate.PAYMENT_FAILED, "user-unknown")
    await dispatcher.drain()
    dispatcher.client.emails.send.assert_not_called()


@pytest.mark.asyncio
async def test_delivery_failure_is_contained(store, user, dispatcher):
    dispatcher.client.emails.send.side_effect = RuntimeError("postmark down")
    task = dispatcher.dispatch(NotificationTemplate.SUBSCRIPTION_CANCELED, "user-1")
    await dispatcher.drain()
    assert task.result() is False


@pytest.mark.asyncio
async def test_without_token_notifications_are_only_logged(store, user, monkeypatch):
    monkeypatch.delenv("POSTMARK_SERVER_TOKEN", raising=False)
    dispatcher = NotificationDispatcher()
    task = dispatcher.dispatch(NotificationTemplate.PAYMENT_RECOVERED, "user-1")
    await dispatcher.drain()
    assert task.result() is False
    assert dispatcher.client is None


def test_dispatch_outside_event_loop_is_skipped():
    assert NotificationDispatcher().dispatch(NotificationTemplate.PAYMENT_FAILED, "user-1") is None
