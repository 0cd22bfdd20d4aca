"""
MongoDB async connection using Motor driver.
Single client instance for connection pooling.
"""
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection

from fastcoach.core.config import settings

KV_COLLECTION = "notification_kv"

# Module-level singleton client (created once, reused across calls)
_client: AsyncIOMotorClient | None = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.MONGO_URI)
    return _client


async def get_kv_collection() -> AsyncIOMotorCollection:
    """
    Yields the key-value collection that holds settings and tracker state,
    and ensures a unique index on `key` exists.
    """
    client = get_client()
    db = client[settings.MONGO_DB_NAME]
    collection = db[KV_COLLECTION]
    # Idempotent: only creates the index if it doesn't exist
    await collection.create_index("key", unique=True)
    return collection
