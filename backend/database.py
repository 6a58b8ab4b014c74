from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware: usage boundaries and event timestamps are compared as aware UTC datetimes
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for natural-key lookups and uniqueness."""
        try:
            # Plans
            await self.db.plans.create_index("plan_id", unique=True)
            await self.db.plans.create_index("name", unique=True)
            await self.db.plans.create_index(
                "stripe_price_id",
                unique=True,
                partialFilterExpression={"stripe_price_id": {"$type": "string"}},
            )
            await self.db.plans.create_index([("is_active", 1), ("sort_order", 1)])

            # Subscriptions - one record per external subscription id; null for one-time payments
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index([("user_id", 1), ("status", 1)])
            await self.db.subscriptions.create_index(
                "stripe_subscription_id",
                unique=True,
                partialFilterExpression={"stripe_subscription_id": {"$type": "string"}},
            )
            await self.db.subscriptions.create_index([("status", 1), ("cancel_at_period_end", 1), ("current_period_end", 1)])
            await self.db.subscriptions.create_index([("plan_id", 1), ("status", 1)])

            # Addon balances - unique user_id makes replayed grants fail as duplicates
            await self.db.user_credits.create_index("user_id", unique=True)

            # Webhook idempotency anchor
            await self.db.webhook_events.create_index("event_id", unique=True)
            await self.db.webhook_events.create_index([("status", 1), ("processed_at", 1)])

            # Users (owned by the account service)
            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index("stripe_customer_id", sparse=True)

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")

            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.error(f"Failed to create indexes: {e}")
            raise

database = Database()


@asynccontextmanager
async def get_db_context():
    """Connect for the duration of a script or one-off job."""
    await database.connect()
    try:
        yield database.get_db()
    finally:
        await database.close()
