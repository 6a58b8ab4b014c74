"""
Ledger - Subscription & Credit Engine
=====================================

Keeps a local record of what each user may consume, consistent with the
Stripe webhook stream, and meters paid features one unit at a time.

Components:
- Plan catalog (tiers, monthly limits, addon credit packs)
- Credit ledger (non-expiring addon balances)
- Subscription state machine (one current record per user)
- Webhook reconciler (idempotent, out-of-order tolerant)
- Consumption gate (atomic decrement before a metered action)
"""

__version__ = "1.0.0"
__product__ = "Ledger"
