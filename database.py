"""
MongoDB access

`db` is the shared database handle (None when DATABASE_URL is not set).
Collection names are the lowercase schema class names.
"""

import os
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

from schemas import utcnow

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ekomart")

# Activity logs are deleted by MongoDB one year after creation
ACTIVITY_LOG_TTL_SECONDS = 365 * 24 * 60 * 60

client = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _to_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with createdAt/updatedAt stamps and return its id as a string."""
    if db is None:
        raise RuntimeError("Database not configured")
    doc = _to_dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not configured")
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def next_sequence(name: str) -> int:
    """Atomically increment and return a named counter."""
    doc = db["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["seq"])


def ensure_indexes():
    db["user"].create_index("email", unique=True)
    db["category"].create_index("slug", unique=True)
    db["product"].create_index("category")
    db["product"].create_index([("createdAt", DESCENDING)])

    db["cart"].create_index("userId", unique=True)
    db["wishlist"].create_index("userId", unique=True)
    db["wishlist"].create_index("items.product")

    db["order"].create_index("orderNumber", unique=True, sparse=True)
    db["order"].create_index("userId")
    db["order"].create_index("orderStatus")
    db["order"].create_index("paymentStatus")
    db["order"].create_index([("createdAt", DESCENDING)])

    db["notification"].create_index([("userId", ASCENDING), ("read", ASCENDING)])
    db["notification"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])

    db["chatconversation"].create_index("customerId")
    db["chatconversation"].create_index("status")
    db["chatconversation"].create_index([("lastMessageTime", DESCENDING)])

    db["banner"].create_index([("position", ASCENDING), ("isActive", ASCENDING), ("sortOrder", ASCENDING)])
    db["banner"].create_index([("isActive", ASCENDING), ("endDate", ASCENDING)])

    db["activitylog"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    db["activitylog"].create_index([("action", ASCENDING), ("entity", ASCENDING), ("createdAt", DESCENDING)])
    db["activitylog"].create_index([("entity", ASCENDING), ("entityId", ASCENDING), ("createdAt", DESCENDING)])
    db["activitylog"].create_index("createdAt", expireAfterSeconds=ACTIVITY_LOG_TTL_SECONDS)

    db["taxrate"].create_index([("country", ASCENDING), ("state", ASCENDING), ("isActive", ASCENDING)])
    db["taxrate"].create_index([("country", ASCENDING), ("isActive", ASCENDING), ("priority", DESCENDING)])
