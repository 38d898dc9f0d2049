from __future__ import annotations

import logging
from typing import Optional, Set

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from destaker.config import get_settings

logger = logging.getLogger(__name__)

SETTLEMENTS = "destaker_settlements"
PREDICTIONS = "destaker_predictions"
RESOLUTIONS = "destaker_resolutions"

ALLOWED_COLLECTIONS: Set[str] = {SETTLEMENTS, PREDICTIONS, RESOLUTIONS}

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect() -> AsyncIOMotorDatabase:
    global _client, _db
    if _client is not None and _db is not None:
        return _db

    settings = get_settings()
    if not settings.MONGODB_URI:
        raise RuntimeError("MONGODB_URI is not configured in environment (.env)")

    _client = AsyncIOMotorClient(
        settings.MONGODB_URI,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=5000,
        retryWrites=True,
        tz_aware=True,
        appname="destaker",
    )
    _db = _client[settings.MONGO_DB_NAME]

    # Append-only logs are read newest-first per market; resolutions are one row per market
    await _db[SETTLEMENTS].create_index([("market_id", ASCENDING), ("created_at", DESCENDING)])
    await _db[PREDICTIONS].create_index([("market_id", ASCENDING), ("created_at", DESCENDING)])
    await _db[RESOLUTIONS].create_index("market_id", unique=True)

    logger.info(f"Results store connected to {settings.MONGO_DB_NAME}")
    return _db


async def close() -> None:
    global _client, _db
    if _client:
        _client.close()
    _client = None
    _db = None


def get_collection(db: AsyncIOMotorDatabase, name: str) -> AsyncIOMotorCollection:
    if name not in ALLOWED_COLLECTIONS:
        raise PermissionError(
            f"Access to collection '{name}' is not allowed. Use one of: {sorted(ALLOWED_COLLECTIONS)}"
        )
    return db[name]
