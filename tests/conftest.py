import itertools
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from database import LISTINGS, USERS, insert_with_id
from main import app
from schemas import CropListing, User
from security import create_access_token, get_password_hash

PASSWORD = "secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)

_phones = itertools.count(1000)


@pytest.fixture
def db():
    mdb = mongomock.MongoClient(tz_aware=True)["canehub_test"]
    database.ensure_indexes(mdb)
    return mdb


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def lenient_client(db):
    """Client that returns 500 responses instead of re-raising server errors."""
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def auth_headers(user: dict) -> dict:
    token = create_access_token({"sub": user["id"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(db):
    def _make(role: str, username: str, **extra) -> dict:
        doc = User(
            name=extra.pop("name", username.title()),
            username=username,
            email=f"{username}@example.com",
            phone=f"+91 98765{next(_phones)}",
            role=role,
            passwordHash=PASSWORD_HASH,
            **extra,
        ).model_dump()
        insert_with_id(db, USERS, doc)
        doc["headers"] = auth_headers(doc)
        return doc
    return _make


@pytest.fixture
def make_listing(db):
    def _make(farmer: dict, quantity: float, price: float = 3000.0, **extra) -> dict:
        doc = CropListing(
            farmer_id=farmer["id"],
            title=extra.pop("title", f"Sugarcane {quantity}t"),
            crop_variety=extra.pop("crop_variety", "Co 86032"),
            quantity_in_tons=quantity,
            expected_price_per_ton=price,
            harvest_availability_date=datetime.now(timezone.utc) + timedelta(days=30),
            location=extra.pop("location", "Kolhapur"),
            **extra,
        ).model_dump()
        insert_with_id(db, LISTINGS, doc)
        return doc
    return _make


@pytest.fixture
def seller(make_user):
    return make_user("Farmer", "ravi")


@pytest.fixture
def buyer(make_user):
    return make_user("Farmer", "prakash")


def future(days: int = 10) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()
