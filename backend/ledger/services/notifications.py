"""Ledger Notification Dispatcher

Fire-and-forget emails for meaningful subscription and credit transitions.
Delivery is best effort: failures are logged inside the task and never reach
the webhook or consumption flow that triggered them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set
import asyncio
import logging
import os

from postmarker.core import PostmarkClient

from database import database

logger = logging.getLogger(__name__)


class NotificationTemplate(str, Enum):
    SUBSCRIPTION_STARTED = "subscription-started"
    ADDON_CREDITS_GRANTED = "addon-credits-granted"
    PAYMENT_FAILED = "payment-failed"
    PAYMENT_RECOVERED = "payment-recovered"
    CANCELLATION_SCHEDULED = "cancellation-scheduled"
    SUBSCRIPTION_CANCELED = "subscription-canceled"


TEMPLATE_COPY = {
    NotificationTemplate.SUBSCRIPTION_STARTED: (
        "Your {plan_name} subscription is active",
        "Hi {name},\n\nYour {plan_name} subscription is now {status}. Your monthly allowance is ready to use.",
    ),
    NotificationTemplate.ADDON_CREDITS_GRANTED: (
        "Your credits have been added",
        "Hi {name},\n\nThanks for your purchase of {plan_name}. The following credits were added to your account: {credits}.",
    ),
    NotificationTemplate.PAYMENT_FAILED: (
        "We could not process your payment",
        "Hi {name},\n\nYour latest payment failed. Please update your payment method to keep your subscription active.",
    ),
    NotificationTemplate.PAYMENT_RECOVERED: (
        "Your payment went through",
        "Hi {name},\n\nThanks, your payment was received and your subscription is active again.",
    ),
    NotificationTemplate.CANCELLATION_SCHEDULED: (
        "Your subscription will end soon",
        "Hi {name},\n\nYour subscription is set to cancel at the end of the current billing period ({period_end}).",
    ),
    NotificationTemplate.SUBSCRIPTION_CANCELED: (
        "Your subscription has ended",
        "Hi {name},\n\nYour subscription has been canceled. Unused addon credits remain on your account.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


class NotificationDispatcher:
    def __init__(self):
        self.client: Optional[PostmarkClient] = None
        self._client_checked = False
        self._tasks: Set[asyncio.Task] = set()

    def _get_client(self) -> Optional[PostmarkClient]:
        if not self._client_checked:
            self._client_checked = True
            token = os.getenv("POSTMARK_SERVER_TOKEN")
            if not token:
                logger.warning("POSTMARK_SERVER_TOKEN not set - notifications will be logged but not sent")
            else:
                self.client = PostmarkClient(server_token=token)
        return self.client

    def dispatch(
        self,
        template: NotificationTemplate,
        user_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule delivery and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"NOTIFICATION_SKIPPED template={template.value} user_id={user_id} reason=no_event_loop")
            return None
        task = loop.create_task(self._deliver(template, user_id, context or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, template: NotificationTemplate, user_id: str, context: Dict[str, Any]) -> bool:
        try:
            db = database.get_db()
            user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "email": 1, "name": 1})
            if not user or not user.get("email"):
                logger.warning(f"NOTIFICATION_SKIPPED template={template.value} user_id={user_id} reason=no_email")
                return False

            values = _SafeDict(context)
            values.setdefault("name", user.get("name") or "there")
            subject, body = TEMPLATE_COPY[template]
            subject = subject.format_map(values)
            body = body.format_map(values)

            client = self._get_client()
            if client is None:
                logger.info(f"NOTIFICATION_LOGGED template={template.value} to={user['email']} subject={subject!r}")
                return False

            await asyncio.to_thread(
                client.emails.send,
                From=os.getenv("EMAIL_SENDER", "billing@example.com"),
                To=user["email"],
                Subject=subject,
                TextBody=body,
                Tag=template.value,
                Metadata={"user_id": user_id, "sent_at": datetime.now(timezone.utc).isoformat()},
            )
            logger.info(f"NOTIFICATION_SENT template={template.value} user_id={user_id}")
            return True
        except Exception as e:
            logger.warning(f"NOTIFICATION_FAILED template={template.value} user_id={user_id} error={e}")
            return False


# Global instance
notification_dispatcher = NotificationDispatcher()
