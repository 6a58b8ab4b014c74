"""Ledger Data Models"""

from .credits import (
    ConsumptionResult,
    CreditSource,
    CreditSummary,
    QuotaSummary,
    UserCredits,
    DEFAULT_QUOTAS,
    validate_quota_name,
)
from .plans import (
    Plan,
    PlanCreate,
    PlanUpdate,
    PlanType,
    BillingPeriod,
)
from .subscriptions import (
    Subscription,
    SubscriptionStatus,
    SubscriptionUsage,
    SubscriptionView,
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
)
from .events import (
    WebhookEventKind,
    WebhookEventRecord,
    WebhookEventStatus,
    CheckoutCompleted,
    SubscriptionChanged,
    InvoiceEvent,
)

__all__ = [
    # Credits
    "ConsumptionResult",
    "CreditSource",
    "CreditSummary",
    "QuotaSummary",
    "UserCredits",
    "DEFAULT_QUOTAS",
    "validate_quota_name",
    # Plans
    "Plan",
    "PlanCreate",
    "PlanUpdate",
    "PlanType",
    "BillingPeriod",
    # Subscriptions
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionUsage",
    "SubscriptionView",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",
    # Webhook events
    "WebhookEventKind",
    "WebhookEventRecord",
    "WebhookEventStatus",
    "CheckoutCompleted",
    "SubscriptionChanged",
    "InvoiceEvent",
]
