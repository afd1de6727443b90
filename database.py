"""
Database helpers

Holds the single MongoDB connection for the process. Configuration comes from
the environment (optionally a .env file):

- DATABASE_URL  -> MongoDB connection string
- DATABASE_NAME -> database to use

When either is missing `db` stays None and the API reports the database as
unavailable instead of failing at import time.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

load_dotenv()

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url, maxPoolSize=10, serverSelectionTimeoutMS=10000)
    db = _client[database_name]


def close_db() -> None:
    global _client, db
    if _client is not None:
        logger.info("Closing MongoDB connection")
        _client.close()
    _client = None
    db = None


def to_object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    """Convert a string id to ObjectId; returns None when it is not a valid id."""
    if value is None or isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _stamp(data: Dict[str, Any], created: bool) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    if created:
        data.setdefault("created_at", now)
    data["updated_at"] = now
    return data


def create_document(
    collection_name: str,
    data: Union[BaseModel, dict],
    database: Optional[Database] = None,
) -> str:
    """Insert a document with timestamps and return its id as a string."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    _stamp(data_dict, created=True)
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def update_document(
    collection_name: str,
    doc_id: ObjectId,
    data: Dict[str, Any],
    database: Optional[Database] = None,
) -> int:
    """$set the given fields (plus updated_at) and return the matched count."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")
    res = target[collection_name].update_one({"_id": doc_id}, {"$set": _stamp(dict(data), created=False)})
    return res.matched_count


def get_documents(
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
    sort: Optional[List[tuple]] = None,
) -> List[dict]:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")
    cursor = target[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
