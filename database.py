"""
MongoDB access for the cooperative ordering API.

Collections keep the names the storefront and back-office read. Per-parent
subcollections are separate collections named "<parent>.<child>" whose
documents carry the parent id.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import get_settings

logger = logging.getLogger(__name__)

MEMBERS = "members"
PRODUCERS = "producers"
PRODUCTS = "products"
VARIANTS = "products.variants"
CATEGORIES = "categories"
DISTRIBUTIONS = "distributionDates"
DISTRIBUTION_PRODUCERS = "distributionDates.producers"
OFFER_ITEMS = "distributionDates.offerItems"
ORDERS = "orders"
INVITES = "invites"

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = MongoClient(settings.database_url)
    return _client


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    return get_client()[get_settings().database_name]


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Dict[str, Any], session=None) -> str:
    doc = dict(data)
    doc.setdefault("_id", new_id())
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    db[collection_name].insert_one(doc, session=session)
    return doc["_id"]


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, session=None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}, session=session)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(db: Database, collection_name: str, doc_id: str, session=None) -> Optional[Dict[str, Any]]:
    return db[collection_name].find_one({"_id": doc_id}, session=session)


def public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a stored document with `_id` exposed as `id`."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    out.pop("hashedPassword", None)
    return out


@contextmanager
def transaction(db: Database) -> Iterator[Any]:
    """Yield a session inside a started transaction, or None when disabled.

    Transactions need a replica set; standalone servers and the in-memory
    test store run the same code path without a session.
    """
    if not get_settings().use_transactions:
        yield None
        return
    with db.client.start_session() as session:
        with session.start_transaction():
            yield session


def chunked(items: List[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def bulk_apply(db: Database, collection_name: str, operations: Iterable[Any], session=None,
               batch_size: Optional[int] = None) -> int:
    """Run write operations in ordered batches that fit the per-batch ceiling."""
    ops = list(operations)
    if not ops:
        return 0
    size = batch_size or get_settings().batch_size
    for batch in chunked(ops, size):
        db[collection_name].bulk_write(batch, ordered=True, session=session)
    if len(ops) > size:
        logger.info("Applied %d writes to %s in %d batches", len(ops), collection_name,
                    (len(ops) + size - 1) // size)
    return len(ops)


def ensure_indexes(db: Database):
    db[MEMBERS].create_index([("email", ASCENDING)], unique=True)
    db[INVITES].create_index([("token", ASCENDING)], unique=True)
    db[VARIANTS].create_index([("productId", ASCENDING)])
    db[PRODUCTS].create_index([("producerId", ASCENDING)])
    db[DISTRIBUTION_PRODUCERS].create_index([("distributionId", ASCENDING)])
    db[OFFER_ITEMS].create_index([("distributionId", ASCENDING), ("productId", ASCENDING)])
    db[ORDERS].create_index([("distributionId", ASCENDING), ("memberId", ASCENDING)])
