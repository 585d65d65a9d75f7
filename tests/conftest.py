"""
Pytest fixtures for the cooperative ordering API.

Every test runs against an in-memory mongomock database; transactions are
disabled because mongomock has no sessions.
"""

import os

os.environ.setdefault("DATABASE_URL", "mongodb://localhost:27017")
os.environ.setdefault("DATABASE_NAME", "coop_test")
os.environ["MONGO_TRANSACTIONS"] = "false"
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import date, datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import get_settings
from database import MEMBERS, PRODUCERS, PRODUCTS, VARIANTS, create_document
from distributions import DistributionService
from security import create_token, hash_password

get_settings.cache_clear()

FIRST_DAY = date(2024, 3, 6)
NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    yield client["coop_test"]
    client.close()


@pytest.fixture
def client(db):
    from database import get_db
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_member(db, email: str, role: str = "member", password: str = "secret123") -> dict:
    member = {
        "email": email,
        "hashedPassword": hash_password(password),
        "role": role,
        "firstName": "",
        "lastName": "",
        "phone": "",
        "membershipStatus": "adherent",
    }
    member["_id"] = create_document(db, MEMBERS, member)
    return member


def auth_headers(member: dict) -> dict:
    return {"Authorization": f"Bearer {create_token(member)}"}


@pytest.fixture
def admin(db):
    return make_member(db, "admin@coop.test", role="admin")


@pytest.fixture
def member(db):
    return make_member(db, "alice@coop.test")


@pytest.fixture
def catalogue(db):
    """Two producers, three products, four variants."""
    farm = create_document(db, PRODUCERS, {"name": "Ferme", "coopStatus": "active"})
    dairy = create_document(db, PRODUCERS, {"name": "Laiterie", "coopStatus": "active"})
    carrots = create_document(db, PRODUCTS, {
        "producerId": farm, "name": "Carottes", "isOrganic": True, "categoryId": "veg", "saleDates": [],
    })
    potatoes = create_document(db, PRODUCTS, {
        "producerId": farm, "name": "Pommes de terre", "isOrganic": False, "categoryId": "veg", "saleDates": [],
    })
    cheese = create_document(db, PRODUCTS, {
        "producerId": dairy, "name": "Tomme", "isOrganic": False, "categoryId": "dairy", "saleDates": [],
    })
    carrots_1kg = create_document(db, VARIANTS, {"productId": carrots, "label": "1 kg", "price": 2.5,
                                                 "activeDates": []})
    carrots_3kg = create_document(db, VARIANTS, {"productId": carrots, "label": "3 kg", "price": 6.0,
                                                 "activeDates": []})
    potatoes_2kg = create_document(db, VARIANTS, {"productId": potatoes, "label": "2 kg", "price": 3.2,
                                                  "activeDates": []})
    cheese_piece = create_document(db, VARIANTS, {"productId": cheese, "label": "Piece", "price": 8.0,
                                                  "activeDates": []})
    return {
        "farm": farm,
        "dairy": dairy,
        "carrots": carrots,
        "potatoes": potatoes,
        "cheese": cheese,
        "carrots_1kg": carrots_1kg,
        "carrots_3kg": carrots_3kg,
        "potatoes_2kg": potatoes_2kg,
        "cheese_piece": cheese_piece,
    }


@pytest.fixture
def planned(db):
    return DistributionService(db).plan_distribution(FIRST_DAY)
