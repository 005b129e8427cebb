"""
MongoDB access for the storefront.

The connection is configured from the environment:
- DATABASE_URL: MongoDB connection string
- DATABASE_NAME: database to use (defaults to "storefront")

When DATABASE_URL is unset ``db`` stays ``None`` and routes that need the
database answer 503.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId as BsonInvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import InvalidId

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

db: Optional[Database] = None

if DATABASE_URL:
    try:
        _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
        db = _client[DATABASE_NAME]
    except PyMongoError as e:
        logger.error(f"Could not create MongoDB client: {e}")
        db = None


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def to_object_id(value: Union[str, ObjectId]) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if value is None:
        raise InvalidId("None")
    try:
        return ObjectId(value)
    except (BsonInvalidId, TypeError):
        raise InvalidId(str(value))


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Make a Mongo document JSON friendly: ObjectIds become strings, datetimes ISO strings."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        out[key] = _serialize_value(value)
    return out


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def ensure_indexes(database: Database) -> None:
    """Create the indexes the engines rely on for uniqueness and lookups."""
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["category"].create_index([("name", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])
    database["order"].create_index([("order_items.product_id", ASCENDING)])
    database["product"].create_index([("category_id", ASCENDING)])
