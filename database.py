"""
MongoDB access for the Tassel Group API.

The client is created lazily by pymongo, so importing this module never opens
a connection. Routes receive the database through the ``get_db`` dependency,
which tests override with an in-memory database.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Config

client = MongoClient(Config.DATABASE_URL)
db = client[Config.DATABASE_NAME]


def get_db() -> Database:
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(obj: Optional[str]) -> Optional[ObjectId]:
    if obj is None:
        return None
    if isinstance(obj, ObjectId):
        return obj
    try:
        return ObjectId(obj)
    except Exception:
        return None


def to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # normalize ObjectId refs to string, including inside order lines
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, list):
            d[k] = [to_str_id(i) if isinstance(i, dict) else (str(i) if isinstance(i, ObjectId) else i) for i in v]
    return d


def find_by_id(database: Database, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    _id = oid(doc_id)
    if not _id:
        return None
    return database[collection].find_one({"_id": _id})


def ensure_indexes(database: Database) -> None:
    database["voucher"].create_index([("code", ASCENDING)], unique=True)
    database["voucher"].create_index([("assignedTo", ASCENDING)])
    database["order"].create_index([("user", ASCENDING), ("createdAt", DESCENDING)])
    database["order"].create_index([("processedBy", ASCENDING)])
    database["booking"].create_index([("user", ASCENDING), ("createdAt", DESCENDING)])
    database["booking"].create_index([("staff", ASCENDING), ("date", ASCENDING)])
    database["giftorder"].create_index([("user", ASCENDING), ("createdAt", DESCENDING)])
    database["payment"].create_index([("status", ASCENDING)])
