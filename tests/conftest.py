import random
from decimal import Decimal

import mongomock
import pytest
from fastapi.testclient import TestClient

from wyzly.auth import Principal, create_jwt_token, hash_password
from wyzly.database import Database
from wyzly.documents import ensure_indexes
from wyzly.main import create_app
from wyzly.payments import MockPaymentProcessor
from wyzly.schemas import Role

PASSWORD = "password123"
PASSWORD_HASH = hash_password(PASSWORD)


class ScriptedRandom(random.Random):
    """Random source whose ``random()`` replays the given values, repeating the last"""

    def __init__(self, *values):
        super().__init__(0)
        self.values = list(values) or [0.0]

    def random(self):
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]

    # Keeps choice() on the bit generator so it does not consume scripted values
    def getrandbits(self, k):
        return super().getrandbits(k)


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def wishlists():
    collection = mongomock.MongoClient()["wyzly_test"]["wishlists"]
    ensure_indexes(collection)
    return collection


@pytest.fixture
def payments():
    return MockPaymentProcessor(success_rate=0.95, latency=0, rng=ScriptedRandom(0.0))


@pytest.fixture
def client(db, wishlists, payments):
    app = create_app(database=db, wishlists=wishlists, payments=payments)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(db):
    def _make_user(username, role=Role.CUSTOMER, email=None):
        email = email or f"{username}@example.com"
        with db.transaction() as cur:
            user_id = cur.insert("users", {
                "email": email,
                "username": username,
                "password_hash": PASSWORD_HASH,
                "role": Role(role).value,
            })
        return Principal(id=user_id, email=email, username=username, role=Role(role))
    return _make_user


@pytest.fixture
def customer(make_user):
    return make_user("john_doe")


@pytest.fixture
def other_customer(make_user):
    return make_user("jane_smith")


@pytest.fixture
def admin(make_user):
    return make_user("admin", Role.ADMIN)


@pytest.fixture
def make_restaurant(db, make_user):
    def _make_restaurant(name, owner=None):
        owner = owner or make_user(name.lower().replace(" ", "_") + "_owner", Role.RESTAURANT)
        with db.transaction() as cur:
            restaurant_id = cur.insert("restaurants", {
                "name": name,
                "phone_number": "+1-555-1001",
                "description": f"{name} boxes",
                "owner_id": owner.id,
            })
        return owner, restaurant_id
    return _make_restaurant


@pytest.fixture
def pasta(make_restaurant):
    """(owner, restaurant_id) for Pasta Palace"""
    return make_restaurant("Pasta Palace")


@pytest.fixture
def sushi(make_restaurant):
    return make_restaurant("Sushi Zen")


@pytest.fixture
def make_box(db):
    def _make_box(restaurant_id, title="Carbonara Box", price="15.99", quantity=10, is_available=True):
        with db.transaction() as cur:
            return cur.insert("boxes", {
                "title": title,
                "price": Decimal(price),
                "quantity": quantity,
                "restaurant_id": restaurant_id,
                "is_available": is_available,
            })
    return _make_box


@pytest.fixture
def fetch_box(db):
    def _fetch_box(box_id):
        return db.execute_query("SELECT * FROM boxes WHERE id = %s", (box_id,), fetch_one=True)
    return _fetch_box


def auth_headers(principal):
    return {"Authorization": f"Bearer {create_jwt_token(principal)}"}


@pytest.fixture
def headers():
    return auth_headers
