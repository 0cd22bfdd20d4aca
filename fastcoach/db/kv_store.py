"""
Key-value persistence for settings and tracker state.

Document shape (Mongo backend):
{
    key:    str,    # e.g. "throttle.lastFired.hydration", "dailyCount.mood.2025-03-09"
    value:  Any,    # JSON-compatible scalar
}

Both backends expose the same async API; backend failures surface as
`StateStoreError` so callers can degrade without knowing the backend.
"""

import logging
import re
from typing import Any, Optional

from pymongo.errors import PyMongoError

from fastcoach.core.config import settings
from fastcoach.db.mongo import get_kv_collection

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """The backing store could not be read or written."""


class InMemoryKeyValueStore:
    """Process-local store. Default for development and tests."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def set_many(self, values: dict[str, Any]) -> None:
        self._data.update(values)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)


class MongoKeyValueStore:
    """Store backed by the `notification_kv` collection."""

    async def get(self, key: str, default: Any = None) -> Any:
        try:
            col = await get_kv_collection()
            doc = await col.find_one({"key": key}, {"_id": 0, "value": 1})
        except PyMongoError as exc:
            raise StateStoreError(f"read {key}: {exc}") from exc
        return default if doc is None else doc.get("value", default)

    async def set(self, key: str, value: Any) -> None:
        try:
            col = await get_kv_collection()
            await col.update_one({"key": key}, {"$set": {"value": value}}, upsert=True)
        except PyMongoError as exc:
            raise StateStoreError(f"write {key}: {exc}") from exc

    async def set_many(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            await self.set(key, value)

    async def delete(self, key: str) -> None:
        try:
            col = await get_kv_collection()
            await col.delete_one({"key": key})
        except PyMongoError as exc:
            raise StateStoreError(f"delete {key}: {exc}") from exc

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            col = await get_kv_collection()
            cursor = col.find({"key": {"$regex": f"^{re.escape(prefix)}"}}, {"_id": 0, "key": 1})
            docs = await cursor.to_list(length=10000)
        except PyMongoError as exc:
            raise StateStoreError(f"list {prefix}*: {exc}") from exc
        return sorted(d["key"] for d in docs)


def create_state_store():
    """Store selected by STATE_BACKEND."""
    backend = settings.STATE_BACKEND.lower()
    if backend == "mongo":
        logger.info("Using MongoDB state store (%s)", settings.MONGO_DB_NAME)
        return MongoKeyValueStore()
    if backend != "memory":
        logger.warning("Unknown STATE_BACKEND %r, using in-memory store", backend)
    return InMemoryKeyValueStore()
