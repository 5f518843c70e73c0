"""
MongoDB access helpers.

The client connects lazily, so importing this module never blocks on the
database. Route code receives the database handle through the get_db
dependency, which tests override with an in-memory database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, GEOSPHERE, TEXT, MongoClient
from pymongo.collation import Collation
from pymongo.database import Database
from pymongo.errors import PyMongoError

import errors
from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes; store the same so comparisons line up
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_obj_id(id_str: Any, what: str = "ID") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise errors.InvalidIdFormat(f"Invalid {what} format")
    return ObjectId(id_str)


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=True)
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    """Create the indexes the collections rely on. Safe to call repeatedly."""
    try:
        cafes = database["cafe"]
        cafes.create_index(
            [("name", ASCENDING), ("address", ASCENDING)],
            unique=True,
            name="name_address_unique",
            collation=Collation(locale="en", strength=2),
        )
        cafes.create_index([("location", GEOSPHERE)], name="location_2dsphere")
        cafes.create_index(
            [("name", TEXT), ("address", TEXT), ("description", TEXT)],
            weights={"name": 10, "address": 5, "description": 1},
            name="cafe_text",
        )
        users = database["user"]
        users.create_index([("email", ASCENDING)], unique=True, name="email_unique")
        users.create_index([("is_active", ASCENDING)], name="is_active")
        logger.info("Database indexes ensured on %s", database.name)
    except PyMongoError as e:
        logger.warning("Could not create indexes: %s", e)
