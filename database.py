import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from errors import Invalid

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "app_db")

USERS = "user"
ROOMS = "room"
MESSAGES = "message"

client: Optional[MongoClient] = None
db: Optional[Database] = None

try:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
except Exception as e:
    logger.error("Could not create Mongo client for %s: %s", DATABASE_URL, e)
    client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database is not initialized")
    return db


def ensure_indexes(database: Database) -> None:
    database[USERS].create_index("email", unique=True)
    database[ROOMS].create_index("members")
    database[MESSAGES].create_index([("room_id", ASCENDING), ("created_at", ASCENDING)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise Invalid("Invalid id")


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    col: Collection = database[collection_name]
    stamp = now()
    data["created_at"] = stamp
    data["updated_at"] = stamp
    result = col.insert_one(data)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Dict[str, Any] | None = None,
                  projection: Optional[Dict[str, Any]] = None, sort: Optional[list] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    return list(cursor)


def update_document(database: Database, collection_name: str, filter_dict: Dict[str, Any],
                    update: Dict[str, Any]) -> int:
    """Apply an update document atomically and return the matched count.

    ``update`` carries Mongo operators (``$set``, ``$addToSet``, ``$pull`` ...);
    ``updated_at`` is stamped in the same write.
    """
    update = dict(update)
    update["$set"] = {**update.get("$set", {}), "updated_at": now()}
    result = database[collection_name].update_one(filter_dict, update)
    return result.matched_count


def delete_document(database: Database, collection_name: str, filter_dict: Dict[str, Any]) -> int:
    result = database[collection_name].delete_one(filter_dict)
    return result.deleted_count
