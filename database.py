"""
MongoDB access for the storefront.

Each collection is named after the lowercase schema class (product, coupon,
order, user, cart). Handlers receive the database through the `get_db`
dependency so tests can swap in an in-memory client.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

db: Optional[Database] = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured (set DATABASE_URL)")
    return db


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document with timestamps and return its id as a string."""
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        payload = data.model_dump()
    else:
        payload = dict(data)
    now = datetime.now(timezone.utc)
    payload["created_at"] = now
    payload["updated_at"] = now
    result = target[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database: Optional[Database] = None) -> List[Dict[str, Any]]:
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
