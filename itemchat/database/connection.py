import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from itemchat.core.config import get_settings


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo(url: Optional[str] = None, db_name: Optional[str] = None) -> AsyncIOMotorDatabase:
    global _client
    settings = get_settings()
    _client = AsyncIOMotorClient(url or settings.MONGO_URL, tz_aware=True)
    db = _client[db_name or settings.MONGO_DB]
    logger.info("Connected to MongoDB database %s", db.name)
    return db


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
