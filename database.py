"""
MongoDB access. `db` is None until DATABASE_URL and DATABASE_NAME are set;
route handlers receive it through the `get_db` dependency.
"""
import logging
from datetime import datetime, timezone
from typing import Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import NotFound, UpstreamFailure

logger = logging.getLogger(__name__)

client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(
        config.DATABASE_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=5000,
        socketTimeoutMS=10000,
    )
    db = client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise UpstreamFailure("Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_indexes(database):
    database["cart_item"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["user"].create_index("email", unique=True)
    database["order"].create_index("tracking_number")
    database["order"].create_index("user_id")
    database["review"].create_index("product_id")
    database["revoked_token"].create_index("jti", unique=True)
    database["revoked_token"].create_index("expires_at", expireAfterSeconds=0)
    logger.info("Indexes ensured on %s", database.name)


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def object_id(value: str, label: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def to_str_id(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def paginate(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit else 0,
    }
