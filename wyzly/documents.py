"""
Document store (MongoDB) holding one wishlist document per user.
"""

import logging
from typing import Optional

from pymongo import MongoClient, ASCENDING
from pymongo.collection import Collection
from pymongo.database import Database as MongoDatabase

from . import config

logger = logging.getLogger(__name__)

WISHLIST_COLLECTION = "wishlists"

_client: Optional[MongoClient] = None


def get_client(url: str = None) -> MongoClient:
    """Return the process-wide MongoDB client, connecting lazily"""
    global _client
    if _client is None:
        _client = MongoClient(url or config.MONGODB_URL, serverSelectionTimeoutMS=5000)
        logger.info("MongoDB client created for database %s", config.MONGODB_DB)
    return _client


def get_db(client: MongoClient = None) -> MongoDatabase:
    client = client or get_client()
    return client[config.MONGODB_DB]


def ensure_indexes(collection: Collection):
    collection.create_index([("user_id", ASCENDING)], unique=True)
    collection.create_index([("user_id", ASCENDING), ("items.box_id", ASCENDING)])


def get_wishlist_collection(db: MongoDatabase = None) -> Collection:
    collection = (db if db is not None else get_db())[WISHLIST_COLLECTION]
    ensure_indexes(collection)
    return collection


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None
