"""
MongoDB access helpers.

`db` is created once from settings and is None when DATABASE_URL is not set.
Route handlers receive the database through the `get_db` dependency so it can
be swapped out in tests.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import get_settings
from errors import Internal


def _connect(settings) -> Optional[Database]:
    if not settings.database_url:
        return None
    client = MongoClient(settings.database_url)
    return client[settings.database_name]


db = _connect(get_settings())


def get_db() -> Database:
    if db is None:
        raise Internal("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    # one cart per user
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index([("user_id", 1), ("created_at", -1)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(value):
    """Make a Mongo document JSON friendly: `_id` -> `id`, ObjectId -> str."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, v in value.items():
            out["id" if key == "_id" else key] = serialize(v)
        return out
    return value
