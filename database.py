"""
MongoDB access for the marketplace.

Collections are named after the lowercased schema class (Order -> "order").
Every multi-document write goes through transaction(), which needs a replica set.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

import settings
from errors import TransactionAbortError

logger = logging.getLogger(__name__)

client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[settings.DATABASE_NAME]


def get_db():
    return db


def now_utc():
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless tz_aware=True
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def transaction():
    """All-or-nothing scope: commits on clean exit, aborts on any exception."""
    try:
        with client.start_session() as session:
            with session.start_transaction():
                yield session
    except PyMongoError as exc:
        logger.warning("Transaction aborted by the database: %s", exc)
        raise TransactionAbortError(f"Transaction aborted, please retry: {exc}") from exc


def _as_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    doc = _as_document(data)
    doc["created_at"] = now_utc()
    doc["updated_at"] = now_utc()
    result = db[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def save_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> None:
    doc = _as_document(data)
    doc["updated_at"] = now_utc()
    db[collection_name].replace_one({"_id": doc["_id"]}, doc, session=session)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[List] = None, session=None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {}, session=session)
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    db["coupon"].create_index([("code", ASCENDING)], unique=True)
    db["cart"].create_index([("user", ASCENDING)], unique=True)
    db["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    db["suborder"].create_index([("order", ASCENDING)])
    db["suborder"].create_index([("seller", ASCENDING), ("created_at", DESCENDING)])
    db["returnrequest"].create_index([("order", ASCENDING)])
    db["dispute"].create_index([("order", ASCENDING)])
    db["paymentrecord"].create_index([("payment_order_id", ASCENDING)])
