"""Ledger exceptions.

Each exception carries the HTTP status the API layer answers with, so routes
can let them propagate to the handler registered in server.py.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for ledger failures."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(LedgerError):
    status_code = 404


class PlanNotFoundError(NotFoundError):
    def __init__(self, plan_id: Optional[str] = None, price_id: Optional[str] = None):
        ref = plan_id or price_id or "<none>"
        super().__init__(f"Plan {ref} not found", {"plan_id": plan_id, "price_id": price_id})
        self.plan_id = plan_id
        self.price_id = price_id


class SubscriptionNotFoundError(NotFoundError):
    pass


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found", {"user_id": user_id})
        self.user_id = user_id


class InvalidSignatureError(LedgerError):
    """Webhook payload failed signature verification (or could not be parsed)."""

    status_code = 400


class ProviderUnavailableError(LedgerError):
    """Stripe API call failed or Stripe is not configured."""

    status_code = 502


class EventInProgressError(LedgerError):
    """Another worker holds the claim on this webhook event."""

    status_code = 409

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} is already being processed", {"event_id": event_id})
        self.event_id = event_id


class ConcurrentModificationError(LedgerError):
    """Compare-and-swap retries on a subscription record were exhausted."""

    def __init__(self, subscription_id: str, attempts: int):
        super().__init__(
            f"Subscription {subscription_id} changed concurrently {attempts} times",
            {"subscription_id": subscription_id, "attempts": attempts},
        )
        self.subscription_id = subscription_id
        self.attempts = attempts


class PlanInUseError(LedgerError):
    status_code = 409

    def __init__(self, plan_id: str, active_subscriptions: int):
        super().__init__(
            f"Plan {plan_id} has {active_subscriptions} active subscription(s)",
            {"plan_id": plan_id, "active_subscriptions": active_subscriptions},
        )
        self.plan_id = plan_id
        self.active_subscriptions = active_subscriptions
