"""Database connections and utilities."""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from typing import Optional
import logging

from crm_sync.core.config import get_settings

logger = logging.getLogger(__name__)


# Collection names
COLLECTIONS = {
    "credentials": "integration_credentials",
    "sync_settings": "sync_settings",
    "sync_runs": "sync_runs",
    "remote_mappings": "remote_mappings",
    "check_ins": "check_ins",
}


class Database:
    """Database connection manager."""

    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = db

    async def connect(self):
        """Connect to MongoDB."""
        settings = get_settings()
        try:
            self.client = AsyncIOMotorClient(settings.mongodb_url)
            self.db = self.client[settings.mongodb_db_name]

            # Test connection
            await self.client.admin.command("ping")
            logger.info("Connected to MongoDB")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    def get_collection(self, name: str):
        """Get a collection by its logical name."""
        if self.db is None:
            raise RuntimeError("Database not connected")
        return self.db[COLLECTIONS.get(name, name)]

    async def ensure_indexes(self):
        """Create the indexes the sync subsystem relies on."""
        await self.get_collection("credentials").create_index(
            [("company_id", ASCENDING), ("provider", ASCENDING)],
            unique=True,
        )
        await self.get_collection("sync_settings").create_index(
            [("company_id", ASCENDING), ("provider", ASCENDING)],
            unique=True,
        )
        # Idempotency anchor: one mapping per local entity and provider
        await self.get_collection("remote_mappings").create_index(
            [
                ("company_id", ASCENDING),
                ("provider", ASCENDING),
                ("local_entity_type", ASCENDING),
                ("local_id", ASCENDING),
            ],
            unique=True,
        )
        await self.get_collection("sync_runs").create_index(
            [("company_id", ASCENDING), ("started_at", DESCENDING)]
        )
        await self.get_collection("check_ins").create_index(
            [("company_id", ASCENDING), ("created_at", ASCENDING)]
        )
        logger.info("Database indexes ensured")


# Global database instance
database = Database()
