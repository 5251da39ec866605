"""MongoDB access: the shared client, collection names and small query helpers."""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

import config

log = structlog.get_logger(__name__)

USERS = "users"
LISTINGS = "croplistings"
ORDERS = "orders"
SCHEDULES = "schedules"
APPLICATIONS = "applications"
INVITATIONS = "invitations"
BILLS = "bills"
CONTRACTS = "contracts"
FARMER_CONTRACTS = "farmercontracts"

client = None
db = None
try:
    client = MongoClient(config.DATABASE_URL, tz_aware=True, serverSelectionTimeoutMS=5000)
    db = client[config.DATABASE_NAME]
except PyMongoError as e:
    log.warning("database_unavailable", error=str(e))


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ------------------------- Ids -------------------------

def is_valid_id(val) -> bool:
    return isinstance(val, str) and ObjectId.is_valid(val) and len(val) == 24


def to_oid(val):
    if isinstance(val, ObjectId):
        return val
    if not is_valid_id(val):
        return None
    return ObjectId(val)


def require_oid(val, label: str = "ID") -> ObjectId:
    oid = to_oid(val)
    if oid is None:
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")
    return oid


# ------------------------- Documents -------------------------

def insert_with_id(database, collection: str, doc: dict, session=None) -> str:
    now = now_utc()
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    res = database[collection].insert_one(doc, session=session)
    oid = str(res.inserted_id)
    database[collection].update_one({"_id": res.inserted_id}, {"$set": {"id": oid}}, session=session)
    doc["id"] = oid
    return oid


def get_by_id(database, collection: str, id_str, extra: Optional[dict] = None, session=None):
    oid = to_oid(id_str)
    if oid is None:
        return None
    query = {"_id": oid}
    if extra:
        query.update(extra)
    return database[collection].find_one(query, session=session)


def list_many(database, collection: str, query: dict = None, sort: Optional[list] = None,
              skip: int = 0, limit: Optional[int] = None):
    cursor = database[collection].find(query or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def serialize(doc):
    """Make a stored document JSON friendly: ObjectIds become strings and `_id` becomes `id`."""
    if doc is None:
        return None
    if isinstance(doc, list):
        return [serialize(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if not isinstance(doc, dict):
        return doc
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out.setdefault("id", str(value))
            continue
        if key == "passwordHash":
            continue
        out[key] = serialize(value)
    return out


def paginate(page: int, limit: int, total: int, total_key: str) -> dict:
    total_pages = (total + limit - 1) // limit
    return {
        "currentPage": page,
        "totalPages": total_pages,
        total_key: total,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


# ------------------------- Transactions -------------------------

@contextmanager
def transaction(database):
    """Yield a session bound to a transaction, or None when transactions are disabled.

    Writes made with a None session are applied immediately; callers that need
    all-or-nothing behaviour without transactions must compensate themselves.
    """
    if not config.MONGO_TRANSACTIONS:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


# ------------------------- Indexes -------------------------

def ensure_indexes(database) -> None:
    database[USERS].create_index("username", unique=True)
    database[USERS].create_index("email", unique=True)
    database[USERS].create_index("phone", unique=True)
    database[USERS].create_index([("role", ASCENDING), ("isActive", ASCENDING)])

    database[LISTINGS].create_index([("farmer_id", ASCENDING), ("createdAt", DESCENDING)])
    database[LISTINGS].create_index([("status", ASCENDING), ("createdAt", DESCENDING)])

    database[ORDERS].create_index([("sellerId", ASCENDING), ("createdAt", DESCENDING)])
    database[ORDERS].create_index([("buyerId", ASCENDING), ("createdAt", DESCENDING)])
    database[ORDERS].create_index("listingId")

    database[SCHEDULES].create_index([("hhmId", ASCENDING), ("status", ASCENDING)])
    database[SCHEDULES].create_index([("startDate", ASCENDING), ("status", ASCENDING)])

    database[APPLICATIONS].create_index([("workerId", ASCENDING), ("scheduleId", ASCENDING)], unique=True)
    database[APPLICATIONS].create_index([("hhmId", ASCENDING), ("status", ASCENDING)])

    database[INVITATIONS].create_index([("workerId", ASCENDING), ("status", ASCENDING)])
    database[INVITATIONS].create_index([("hhmId", ASCENDING), ("invitationType", ASCENDING)])

    database[BILLS].create_index([("factoryId", ASCENDING), ("billDate", DESCENDING)])
    database[BILLS].create_index("farmerId")

    database[CONTRACTS].create_index([("hhm_id", ASCENDING), ("factory_id", ASCENDING)])
    database[CONTRACTS].create_index([("status", ASCENDING), ("createdAt", DESCENDING)])
    database[CONTRACTS].create_index("expires_at")
    database[FARMER_CONTRACTS].create_index([("farmer_id", ASCENDING), ("hhm_id", ASCENDING)])
    database[FARMER_CONTRACTS].create_index([("status", ASCENDING), ("createdAt", DESCENDING)])
    log.info("indexes_ensured", database=database.name)
