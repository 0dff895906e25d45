"""
MongoDB access for SkillSwap.

The client is created lazily by pymongo (no connection until first use), so
importing this module never touches the network. Route handlers receive the
database through the ``get_db`` dependency so tests can swap in another one.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo import MongoClient
from pymongo.database import Database

import config

client = MongoClient(config.DATABASE_URL, tz_aware=True)
db = client[config.DATABASE_NAME]

FEEDBACK_PER_REQUEST_INDEX = "feedback_one_per_request"


def get_db() -> Database:
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert ``data`` stamped with created_at/updated_at and return the new id."""
    doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["request"].create_index([("from_uid", 1), ("status", 1)])
    database["request"].create_index([("to_uid", 1), ("status", 1)])
    database["message"].create_index([("chat_id", 1), ("timestamp", 1)])
    database["feedback"].create_index("to_uid")
    database["savedprofile"].create_index([("owner_uid", 1), ("target_uid", 1)], unique=True)
    if config.FEEDBACK_UNIQUE_PER_REQUEST:
        database["feedback"].create_index(
            [("from_uid", 1), ("request_id", 1)], unique=True, name=FEEDBACK_PER_REQUEST_INDEX,
        )
    elif FEEDBACK_PER_REQUEST_INDEX in database["feedback"].index_information():
        database["feedback"].drop_index(FEEDBACK_PER_REQUEST_INDEX)
