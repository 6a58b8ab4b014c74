"""Ledger API Routes"""

from .webhooks import router as webhooks_router
from .billing import router as billing_router
from .credits import router as credits_router
from .plans import router as plans_router
from .admin import router as admin_router

__all__ = [
    "webhooks_router",
    "billing_router",
    "credits_router",
    "plans_router",
    "admin_router",
]
