"""
MongoDB access for the Game Store

The client is a process-wide resource: `init_db()` opens it at startup and
`close_db()` releases it on shutdown. Everything else goes through `get_db()`.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def init_db(client: Optional[MongoClient] = None, name: Optional[str] = None) -> Database:
    """Open the client (or adopt the one given) and ensure indexes."""
    global _client, _db
    if _db is not None:
        raise RuntimeError("Database already initialised")
    _client = client or MongoClient(settings.mongo_uri)
    _db = _client[name or settings.database_name]
    ensure_indexes(_db)
    logger.info("MongoDB connected to database %s", _db.name)
    return _db


def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _db = None


def get_db() -> Database:
    if _db is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _db


def ensure_indexes(db: Database) -> None:
    db.user.create_index([("email", ASCENDING)], unique=True)
    db.user.create_index([("username", ASCENDING)], unique=True)
    db.review.create_index([("game_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db.order.create_index([("user_id", ASCENDING), ("date", ASCENDING)])


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with timestamps and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True, exclude_none=True)
    else:
        doc = dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = get_db()[collection_name].insert_one(doc)
    return str(result.inserted_id)


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON-friendly (ObjectIds become strings)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value
