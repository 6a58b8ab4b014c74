"""Ledger Services"""

from .plan_catalog import PlanCatalog, plan_catalog
from .credit_ledger import CreditLedger, credit_ledger
from .subscription_service import SubscriptionService, subscription_service
from .consumption_gate import ConsumptionGate, consumption_gate
from .notifications import NotificationDispatcher, notification_dispatcher
from .billing_service import BillingService, billing_service
from .webhook_reconciler import WebhookReconciler, webhook_reconciler

__all__ = [
    "PlanCatalog",
    "plan_catalog",
    "CreditLedger",
    "credit_ledger",
    "SubscriptionService",
    "subscription_service",
    "ConsumptionGate",
    "consumption_gate",
    "NotificationDispatcher",
    "notification_dispatcher",
    "BillingService",
    "billing_service",
    "WebhookReconciler",
    "webhook_reconciler",
]
