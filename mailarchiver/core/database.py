"""Database connection manager."""

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional

from mailarchiver.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async MongoDB connection manager."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self._uri = uri or settings.mongodb_uri
        self._database = database or settings.mongodb_database

    async def connect(self):
        """Establish database connection."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(self._uri)
                # Test connection
                await self.client.admin.command('ping')

            self.db = self.client[self._database]

            logger.info(f"Connected to MongoDB: {self._database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    @property
    def current_database_name(self) -> str:
        """Get current database name."""
        return self._database

    async def ping(self) -> bool:
        """Check that the server answers."""
        if self.client is None:
            return False
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
