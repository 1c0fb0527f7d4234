"""MongoDB access helpers.

The client is created lazily on first use so the app can start (and report
its configuration on ``/test``) without a reachable database.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import get_settings
from errors import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def _connect() -> Database:
    global _client
    settings = get_settings()
    if not settings.database_url:
        raise ConfigurationError("DATABASE_URL not set")
    if not settings.database_url.startswith(("mongodb://", "mongodb+srv://")):
        raise ConfigurationError("DATABASE_URL must start with 'mongodb://' or 'mongodb+srv://'")

    if _client is None:
        _client = MongoClient(
            settings.database_url,
            retryWrites=True,
            retryReads=True,
            connectTimeoutMS=30000,
            serverSelectionTimeoutMS=30000,
            socketTimeoutMS=60000,
        )
        logger.info("MongoDB client created for database %s", settings.database_name)
    return _client[settings.database_name]


def get_db() -> Database:
    """FastAPI dependency returning the application database."""
    try:
        return _connect()
    except PyMongoError as e:
        logger.error("MongoDB connection failed: %s", e)
        raise PersistenceError() from e


def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB client closed")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_object_id(value: str) -> Optional[ObjectId]:
    """Parse a path id; malformed ids yield None so callers can 404."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    data = dict(doc)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return data


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True, exclude={"id"}, mode="json")
    else:
        data_dict = dict(data)
    data_dict.pop("_id", None)
    try:
        result = db[collection_name].insert_one(data_dict)
    except PyMongoError as e:
        logger.error("Insert into %s failed: %s", collection_name, e)
        raise PersistenceError() from e
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    try:
        cursor = db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        return [serialize_document(doc) for doc in cursor]
    except PyMongoError as e:
        logger.error("Query on %s failed: %s", collection_name, e)
        raise PersistenceError() from e
