from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGO_DB_NAME, MONGO_URI, STORE_BACKEND
from utils.indexes import ensure_indexes
from utils.store import InMemoryKeyedStore, KeyedStore, MongoKeyedStore


async def create_store(clock=datetime.utcnow) -> KeyedStore:
    if STORE_BACKEND == "memory":
        return InMemoryKeyedStore(clock=clock)

    if STORE_BACKEND != "mongo":
        raise RuntimeError(f"Unsupported STORE_BACKEND {STORE_BACKEND}")
    if not MONGO_URI:
        raise RuntimeError("MONGODB_URI not set")

    client = AsyncIOMotorClient(MONGO_URI)
    db = client.get_default_database(MONGO_DB_NAME)
    store = MongoKeyedStore(db, clock=clock)
    await ensure_indexes(store.collection)
    return store
