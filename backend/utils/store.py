from __future__ import annotations

import copy
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

Clock = Callable[[], datetime]


def glob_to_regex(pattern: str) -> str:
    # only "*" is special; everything else in a key is literal
    return "^" + re.escape(pattern).replace(r"\*", ".*") + "$"


class KeyedStore(ABC):
    """
    Durable keyed store used by every repository.

    Values are JSON-compatible (dicts, lists, strings, numbers). `ttl` is in
    seconds; a key whose TTL has passed reads as absent.
    """

    @abstractmethod
    async def get(self, key: str) -> Any: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Atomically write `value` only when no live value exists. True when written."""

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool: ...

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> None: ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> None: ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]: ...

    @abstractmethod
    async def scan(self, pattern: str) -> list[str]: ...

    async def ping(self) -> bool:
        return True


# =====================================================
# MONGO
# =====================================================

class MongoKeyedStore(KeyedStore):
    """
    One collection, one document per key:
        {_id: key, value: ..., members: [...], expires_at: datetime | None}

    The TTL index on expires_at removes dead documents eventually; reads never
    trust it and filter on expires_at themselves.
    """

    def __init__(self, db, collection_name: str = "kv_store", clock: Clock = datetime.utcnow):
        self.db = db
        self.collection = db[collection_name]
        self._clock = clock

    def _expires_at(self, ttl: Optional[int]) -> Optional[datetime]:
        if ttl is None:
            return None
        return self._clock() + timedelta(seconds=ttl)

    def _live(self, query: dict) -> dict:
        return {
            **query,
            "$or": [
                {"expires_at": None},
                {"expires_at": {"$gt": self._clock()}},
            ],
        }

    async def _drop_expired(self, key: str) -> None:
        await self.collection.delete_one({"_id": key, "expires_at": {"$lte": self._clock()}})

    async def get(self, key):
        doc = await self.collection.find_one(self._live({"_id": key}))
        if not doc:
            return None
        return doc.get("value")

    async def set(self, key, value, ttl=None):
        await self.collection.replace_one(
            {"_id": key},
            {"value": value, "expires_at": self._expires_at(ttl)},
            upsert=True,
        )

    async def set_if_absent(self, key, value, ttl=None):
        await self._drop_expired(key)
        try:
            await self.collection.insert_one({
                "_id": key,
                "value": value,
                "expires_at": self._expires_at(ttl),
            })
        except DuplicateKeyError:
            return False
        return True

    async def delete(self, key):
        res = await self.collection.delete_one({"_id": key})
        return res.deleted_count == 1

    async def incr(self, key, amount=1):
        await self._drop_expired(key)
        doc = await self.collection.find_one_and_update(
            {"_id": key},
            {"$inc": {"value": amount}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    async def expire(self, key, ttl):
        res = await self.collection.update_one(
            self._live({"_id": key}),
            {"$set": {"expires_at": self._expires_at(ttl)}},
        )
        return res.matched_count == 1

    async def sadd(self, key, *members):
        if not members:
            return
        await self._drop_expired(key)
        await self.collection.update_one(
            {"_id": key},
            {"$addToSet": {"members": {"$each": list(members)}}},
            upsert=True,
        )

    async def srem(self, key, *members):
        if not members:
            return
        await self.collection.update_one(
            {"_id": key},
            {"$pull": {"members": {"$in": list(members)}}},
        )

    async def smembers(self, key):
        doc = await self.collection.find_one(self._live({"_id": key}), {"members": 1})
        if not doc:
            return set()
        return set(doc.get("members") or [])

    async def scan(self, pattern):
        cursor = self.collection.find(
            self._live({"_id": {"$regex": glob_to_regex(pattern)}}),
            {"_id": 1},
        )
        return sorted([doc["_id"] async for doc in cursor])

    async def ping(self):
        await self.db.command("ping")
        return True


# =====================================================
# IN-MEMORY
# =====================================================

class InMemoryKeyedStore(KeyedStore):
    """Process-local store for tests and STORE_BACKEND=memory runs."""

    def __init__(self, clock: Clock = datetime.utcnow):
        self._clock = clock
        self._values: dict[str, Any] = {}
        self._expiry: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _alive(self, key: str) -> bool:
        if key not in self._values:
            return False
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return False
        return True

    def _write(self, key: str, value: Any, ttl: Optional[int]) -> None:
        self._values[key] = copy.deepcopy(value)
        if ttl is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + timedelta(seconds=ttl)

    async def get(self, key):
        with self._lock:
            if not self._alive(key):
                return None
            value = self._values[key]
            if isinstance(value, set):
                return None
            return copy.deepcopy(value)

    async def set(self, key, value, ttl=None):
        with self._lock:
            self._write(key, value, ttl)

    async def set_if_absent(self, key, value, ttl=None):
        with self._lock:
            if self._alive(key):
                return False
            self._write(key, value, ttl)
            return True

    async def delete(self, key):
        with self._lock:
            existed = self._alive(key)
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return existed

    async def incr(self, key, amount=1):
        with self._lock:
            current = self._values[key] if self._alive(key) else 0
            current = int(current) + amount
            self._values[key] = current
            return current

    async def expire(self, key, ttl):
        with self._lock:
            if not self._alive(key):
                return False
            self._expiry[key] = self._clock() + timedelta(seconds=ttl)
            return True

    async def sadd(self, key, *members):
        with self._lock:
            if not self._alive(key):
                self._values[key] = set()
                self._expiry.pop(key, None)
            self._values[key].update(members)

    async def srem(self, key, *members):
        with self._lock:
            if self._alive(key):
                self._values[key].difference_update(members)

    async def smembers(self, key):
        with self._lock:
            if not self._alive(key):
                return set()
            return set(self._values[key])

    async def scan(self, pattern):
        regex = re.compile(glob_to_regex(pattern))
        with self._lock:
            keys = [key for key in list(self._values) if regex.match(key)]
            return sorted(key for key in keys if self._alive(key))


def keys_suffixes(keys: Iterable[str], prefix: str) -> list[str]:
    return [key[len(prefix):] for key in keys if key.startswith(prefix)]
