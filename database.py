"""
Database connection.

Connects to MongoDB from ``DATABASE_URL`` / ``DATABASE_NAME`` at import. When
either is missing, ``db`` stays ``None`` and the store runs disconnected:
reads come back empty and writes raise ``NotConnected``.
"""
import logging
import os

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from memory_store import MemoryStore
from store import DocumentStore, MongoStore

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo").lower()

client = None
db = None

if STORE_BACKEND == "mongo":
    if DATABASE_URL and DATABASE_NAME:
        try:
            client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
            db = client[DATABASE_NAME]
        except PyMongoError as e:
            logger.warning("Database client could not be created: %s", e)
    else:
        logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")


def get_store() -> DocumentStore:
    if STORE_BACKEND == "memory":
        return MemoryStore()
    return MongoStore(client, db)
