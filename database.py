"""
MongoDB connection for the store.

The connection is configured from the environment:
- DATABASE_URL  -> MongoDB connection string (no database when unset)
- DATABASE_NAME -> database name, "online_store" by default
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "online_store")


def utcnow() -> datetime:
    # pymongo hands datetimes back as naive UTC, so store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def ensure_indexes(database: Database) -> None:
    database["customer"].create_index("username", unique=True)
    database["order_item"].create_index([("order_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["payment"].create_index("order_id", unique=True)
    database["shipping"].create_index("order_id", unique=True)
    database["session"].create_index("token", unique=True)
    database["order"].create_index("customer_id")
    database["review"].create_index("product_id")
    database["product_image"].create_index([("product_id", ASCENDING), ("image_order", ASCENDING)])


client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    try:
        ensure_indexes(db)
    except Exception as e:
        logger.warning("Could not create indexes on %s: %s", DATABASE_NAME, e)


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db
