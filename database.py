"""
MongoDB access for the issue reporter.

Collections are named after the lowercase model name (User -> "user",
Issue -> "issue", Comment -> "comment").
"""

from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import ValidationError
from log import get_logger

logger = get_logger("database")

USERS = "user"
ISSUES = "issue"
COMMENTS = "comment"

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_id(value: Any, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError.single(field, f"Invalid {field}")


def create_document(database: Database, collection_name: str, data: Any) -> dict:
    """Insert a document stamped with created_at/updated_at and return it with its _id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[list] = None,
    projection: Optional[dict] = None,
) -> list:
    cursor = database[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: ``_id`` becomes ``id``, ObjectIds become strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if key == "_id":
                out["id"] = str(item)
            else:
                out[key] = serialize(item)
        return out
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def ensure_indexes(database: Database) -> None:
    database[ISSUES].create_index([("category", ASCENDING), ("status", ASCENDING)])
    database[ISSUES].create_index(
        [("location.coordinates.latitude", ASCENDING), ("location.coordinates.longitude", ASCENDING)]
    )
    database[ISSUES].create_index([("reportedBy", ASCENDING)])
    database[ISSUES].create_index([("created_at", DESCENDING)])

    database[COMMENTS].create_index([("issue", ASCENDING), ("created_at", ASCENDING)])
    database[COMMENTS].create_index([("author", ASCENDING)])
    database[COMMENTS].create_index([("parentComment", ASCENDING)])

    database[USERS].create_index([("email", ASCENDING)], unique=True)
    logger.info("indexes_ensured", database=database.name)
