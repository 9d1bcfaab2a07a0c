"""
MongoDB connection and collection setup.

The motor client is created lazily from MONGO_URL / DB_NAME so importing the
app never opens a connection; tests replace get_db through dependency_overrides.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from dotenv import load_dotenv
from pathlib import Path
from typing import Optional
import os
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
        _client = AsyncIOMotorClient(mongo_url)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    """FastAPI dependency returning the application database"""
    return get_client()[os.environ.get('DB_NAME', 'project_ledger')]


def use_transactions() -> bool:
    """Multi-document transactions need a replica set; opt-in only"""
    return os.environ.get('LEDGER_USE_TRANSACTIONS', 'false').lower() in ('1', 'true', 'yes')


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """Create the indexes the ledger relies on (idempotent)"""
    await db["users"].create_index([("email", ASCENDING)], unique=True)
    await db["projects"].create_index([("created_by", ASCENDING), ("code", ASCENDING)], unique=True)
    await db["projects"].create_index([("status", ASCENDING)])
    await db["parties"].create_index([("project_id", ASCENDING), ("name", ASCENDING)], unique=True)
    await db["parties"].create_index([("project_id", ASCENDING), ("party_type", ASCENDING)])
    await db["transactions"].create_index(
        [("project_id", ASCENDING), ("date", DESCENDING), ("type", ASCENDING)]
    )
    await db["transactions"].create_index([("party_id", ASCENDING)])
    await db["audit_logs"].create_index([("entity_id", ASCENDING), ("timestamp", DESCENDING)])
    logger.info("MongoDB indexes ensured")


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None
