"""MongoDB connection, id helpers and index setup."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ASCENDING, AsyncMongoClient

from config import get_settings
from errors import InvalidInput

logger = logging.getLogger(__name__)

# Fields never returned by default user reads
USER_PRIVATE_FIELDS = ("password_hash", "reset_password_token", "reset_password_expire")
USER_PUBLIC_PROJECTION = {field: 0 for field in USER_PRIVATE_FIELDS}

_client: Optional[AsyncMongoClient] = None


def get_client() -> AsyncMongoClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = AsyncMongoClient(settings.database_url, tz_aware=True)
    return _client


def get_db():
    """Dependency for FastAPI endpoints that need the database."""
    return get_client()[get_settings().database_name]


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None


async def ensure_indexes(db) -> None:
    """Create the unique indexes the operation layer relies on."""
    await db["user"].create_index("email", unique=True)
    await db["review"].create_index([("user", ASCENDING), ("product", ASCENDING)], unique=True)
    await db["preferences"].create_index("user", unique=True)
    logger.info("Database indexes ensured")


async def check_database_health(db) -> bool:
    try:
        await db.command("ping")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# Helpers

def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_obj_id(id_str: str) -> ObjectId:
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise InvalidInput(f"Invalid id: {id_str}")
    return ObjectId(id_str)


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


async def create_document(db, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert ``data`` with timestamps and return the stored document sanitized."""
    doc = {**data, "created_at": now(), "updated_at": now()}
    res = await db[collection_name].insert_one(doc)
    doc["_id"] = res.inserted_id
    return sanitize(doc)
