"""
Database access

MongoDB connection for the store. The handle is created once at import time
from the environment and handed to the routes through the `get_db`
dependency, so tests can swap in another database.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ferrari_store")

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


UNIQUE_INDEXES = {
    "user": ("email", "national_id"),
    "product": ("name",),
}


def ensure_indexes(database) -> None:
    for collection, fields in UNIQUE_INDEXES.items():
        for field in fields:
            database[collection].create_index([(field, ASCENDING)], unique=True)


def index_status(database) -> Dict[str, bool]:
    """Which of the unique indexes exist, keyed "collection.field"."""
    status = {}
    for collection, fields in UNIQUE_INDEXES.items():
        info = database[collection].index_information()
        unique_keys = [list(index["key"]) for index in info.values() if index.get("unique")]
        for field in fields:
            status[f"{collection}.{field}"] = [(field, ASCENDING)] in unique_keys
    return status


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id coming from a URL or a body. None when it is not an ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> ObjectId:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc.setdefault("created_at", now())
    doc.setdefault("updated_at", doc["created_at"])
    result = database[collection_name].insert_one(doc)
    return result.inserted_id


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, sort: Optional[str] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort.lstrip("-"), -1 if sort.startswith("-") else 1)
    return list(cursor)


def serialize_doc(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if not isinstance(doc, dict):
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = serialize_doc(v)
        else:
            out[k] = serialize_doc(v)
    return out
