from __future__ import annotations

import logging
import os
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

# Process-wide client; routers reach the database through the orchestrator.
_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None


async def connect_mongo(url: Optional[str] = None, db_name: Optional[str] = None) -> AsyncIOMotorDatabase:
    """Open the shared client once. MONGO_URL is required at runtime."""

    global _client, _database

    if _database is not None:
        return _database

    # tz_aware so lock/outbox timestamps compare against now_utc() directly
    _client = AsyncIOMotorClient(
        url or os.environ["MONGO_URL"],
        tz_aware=True,
        appname="channel-hub",
        serverSelectionTimeoutMS=5000,
    )
    _database = _client[db_name or os.environ.get("DB_NAME", "channel_hub")]
    logger.info("Connected to MongoDB database %s", _database.name)
    return _database


async def close_mongo() -> None:
    global _client, _database

    if _client is not None:
        _client.close()
    _client = None
    _database = None


async def get_db() -> AsyncIOMotorDatabase:
    if _database is None:
        return await connect_mongo()
    return _database


async def ping_mongo(db: AsyncIOMotorDatabase) -> bool:
    try:
        await db.command("ping")
    except PyMongoError as e:
        logger.warning("MongoDB ping failed: %s", e)
        return False
    return True
