"""
MongoDB access for the storefront.

`db` is None when DATABASE_URL is not configured; callers check it the same way
the health endpoint does.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pymongo import ASCENDING, DESCENDING, MongoClient
from pydantic import BaseModel

from dotenv import load_dotenv
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if db is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    if db is None:
        raise RuntimeError("Database not configured")
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    """One account per email, one cart per user."""
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
