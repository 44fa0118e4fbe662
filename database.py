"""
MongoDB access helpers.

Collections are addressed by the lowercased schema class name
("user", "post", "conversation", "message").
"""
import logging
import os
from datetime import datetime, timezone
from typing import Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from errors import NotFound

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "orbya")

log = logging.getLogger("orbya.database")

# MongoClient connects lazily, importing this module never touches the network
client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000, tz_aware=True)
db = client[DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def get_collection(name: str):
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def parse_object_id(value: str, what: str = "Resource") -> ObjectId:
    """Unknown and malformed ids are both reported as missing resources."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def ensure_indexes() -> None:
    users = get_collection("user")
    users.create_index("username", unique=True)
    users.create_index("email", unique=True)

    conversations = get_collection("conversation")
    conversations.create_index("participant_key", unique=True)
    conversations.create_index("participants")
    conversations.create_index([("last_activity", DESCENDING)])

    messages = get_collection("message")
    messages.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
    messages.create_index("sender_id")

    posts = get_collection("post")
    posts.create_index([("author_id", ASCENDING), ("created_at", DESCENDING)])
    posts.create_index("likes.user")
    posts.create_index([("created_at", DESCENDING)])


def init_database() -> bool:
    try:
        ensure_indexes()
    except PyMongoError as exc:
        log.warning("Could not prepare indexes on %s: %s", DATABASE_NAME, exc)
        return False
    log.info("Indexes ready on database %s", DATABASE_NAME)
    return True
