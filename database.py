"""
MongoDB access for DevConnect

`db` is None when no DATABASE_URL is configured; every caller goes through
`get_collection`, which turns that into a 500 instead of an AttributeError.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING, DESCENDING

import config

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL:
    client = MongoClient(
        config.DATABASE_URL,
        tz_aware=True,
        serverSelectionTimeoutMS=5000,
        retryWrites=True,
        retryReads=True,
    )
    db = client[config.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL not set; database features are disabled")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # some drivers and mocks hand back naive datetimes that are UTC already
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_collection(name: str):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db[name]


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def require_object_id(value: str, label: str = "id") -> ObjectId:
    oid = to_object_id(value)
    if oid is None:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return oid


def serialize(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: `_id` -> `id`, ObjectId -> str, datetime -> iso."""
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize(v)
        return out
    if isinstance(doc, list):
        return [serialize(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    return doc


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    ts = now_utc()
    payload.setdefault("created_at", ts)
    payload.setdefault("updated_at", ts)
    result = get_collection(collection_name).insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None) -> list:
    cursor = get_collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes() -> None:
    if db is None:
        return
    db["user"].create_index([("oauth_id", ASCENDING)], sparse=True)
    db["user"].create_index([("username", ASCENDING)])
    db["session"].create_index([("token", ASCENDING)], unique=True)
    db["follow"].create_index([("follower_id", ASCENDING), ("following_id", ASCENDING)], unique=True)
    db["follow"].create_index([("following_id", ASCENDING), ("status", ASCENDING)])
    db["bookmark"].create_index([("user_id", ASCENDING), ("post_id", ASCENDING)], unique=True)
    db["like"].create_index([("user_id", ASCENDING), ("post_id", ASCENDING)], unique=True)
    db["share"].create_index([("user_id", ASCENDING), ("post_id", ASCENDING)], unique=True)
    db["pollvote"].create_index([("poll_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db["comment"].create_index([("post_id", ASCENDING), ("created_at", DESCENDING)])
    db["message"].create_index([("sender_id", ASCENDING), ("receiver_id", ASCENDING), ("created_at", DESCENDING)])
    db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["otp"].create_index([("phone", ASCENDING)], unique=True)
    logger.info("Database indexes ensured")
