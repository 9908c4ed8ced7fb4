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
            self.client = AsyncIOMotorClient(mongo_url)
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
        """Create MongoDB indexes used by the wholesaler notification queries."""
        try:
            try:
                await self.db.orders.create_index("orderNumber", unique=True)
            except Exception:
                pass  # Index may already exist with different options

            # Eligibility sweep: paid/processing orders with unnotified wholesalers, oldest first
            await self.db.orders.create_index("items.wholesaler.notified")
            await self.db.orders.create_index("payment.status")
            await self.db.orders.create_index("status")
            await self.db.orders.create_index([("createdAt", 1)])

            # Per-order processing leases; expired documents are reaped by the TTL monitor
            try:
                await self.db.wholesaler_notification_leases.create_index("orderId", unique=True)
            except Exception:
                pass
            await self.db.wholesaler_notification_leases.create_index("expiresAt", expireAfterSeconds=0)

            # Message log - outbound wholesaler emails
            await self.db.message_logs.create_index([("created_at", -1)])
            await self.db.message_logs.create_index([("recipient", 1), ("created_at", -1)])
            await self.db.message_logs.create_index("provider_message_id", sparse=True)

            # Audit log
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("resource_id", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.orders.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
