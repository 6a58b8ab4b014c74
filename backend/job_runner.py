"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging
import os
from datetime import timedelta

logger = logging.getLogger(__name__)

DEFAULT_LAPSED_GRACE_HOURS = 24


def _lapsed_grace() -> timedelta:
    try:
        hours = float(os.getenv("LAPSED_SUBSCRIPTION_GRACE_HOURS", DEFAULT_LAPSED_GRACE_HOURS))
    except ValueError:
        hours = DEFAULT_LAPSED_GRACE_HOURS
    return timedelta(hours=hours)


async def run_lapsed_subscription_sweep():
    """Cancel soft-canceled subscriptions whose period ended with no superseding event."""
    try:
        from ledger.services.subscription_service import subscription_service
        from ledger.services.notifications import NotificationTemplate, notification_dispatcher
        from models import AuditAction
        from utils.audit import create_audit_log

        lapsed = await subscription_service.sweep_lapsed(grace=_lapsed_grace())
        for record in lapsed:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_LAPSED,
                user_id=record.user_id,
                resource_type="subscription",
                resource_id=record.subscription_id,
                metadata={"current_period_end": record.current_period_end.isoformat() if record.current_period_end else None},
            )
            notification_dispatcher.dispatch(NotificationTemplate.SUBSCRIPTION_CANCELED, record.user_id)
        logger.info(f"Lapsed subscription sweep completed: {len(lapsed)} subscriptions canceled")
        return {"message": f"Lapsed subscriptions canceled: {len(lapsed)}", "count": len(lapsed)}
    except Exception as e:
        logger.error(f"Lapsed subscription sweep failed: {e}")
        raise


async def run_webhook_event_cleanup(retention_days: int = 90):
    """Drop processed webhook event records older than the retention window.

    Stripe stops retrying an event after three days, so old PROCESSED anchors
    can no longer absorb a replay.
    """
    try:
        from datetime import datetime, timezone
        from database import database

        db = database.get_db()
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        result = await db.webhook_events.delete_many({"status": "PROCESSED", "processed_at": {"$lt": cutoff}})
        logger.info(f"Webhook event cleanup completed: {result.deleted_count} records removed")
        return {"message": f"Webhook events removed: {result.deleted_count}", "count": result.deleted_count}
    except Exception as e:
        logger.error(f"Webhook event cleanup failed: {e}")
        raise
