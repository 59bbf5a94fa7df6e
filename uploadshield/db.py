from functools import lru_cache
import os

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConfigurationError

from uploadshield.settings import _env_int

SERVER_SELECTION_TIMEOUT_MS = 2000


@lru_cache
def _mongo_uri() -> str:
    return os.getenv("MONGODB_URI", "mongodb://localhost:27017/uploadshield")


@lru_cache
def get_mongo_client() -> AsyncIOMotorClient:
    # Motor keeps its own connection pool; one client per process.
    return AsyncIOMotorClient(_mongo_uri(), serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)


def get_db():
    client = get_mongo_client()
    try:
        return client.get_default_database()
    except ConfigurationError:
        return client.get_database(os.getenv("MONGO_DB", "uploadshield"))


async def ensure_upload_indexes():
    """
    Indexes for hash lookups and automatic retention of upload records.
    """
    db = get_db()
    retention_days = _env_int("UPLOAD_RETENTION_DAYS", 30)
    await db.uploads.create_index("sha256")
    await db.uploads.create_index(
        "created_at",
        expireAfterSeconds=retention_days * 24 * 60 * 60,
        name="uploads_created_at_ttl",
    )
