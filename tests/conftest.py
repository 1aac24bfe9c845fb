import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
from bson import ObjectId
import pytest
from fastapi.testclient import TestClient

from auth import CurrentUser, IdentityProvider, get_password_hash
from catalog import Catalog
from database import ensure_indexes, get_db, utcnow
from integrations import LanguageModel
from main import app, get_llm
from schemas import Product, ShippingAddress


class ScriptedModel(LanguageModel):
    """Returns queued replies in order, then empty strings."""

    def __init__(self):
        self.replies = []
        self.prompts = []

    def generate_copy(self, prompt, system=None, max_tokens=500, temperature=0.3):
        self.prompts.append(prompt)
        return self.replies.pop(0) if self.replies else ""


@pytest.fixture
def db():
    database = mongomock.MongoClient().storefront
    ensure_indexes(database)
    return database


@pytest.fixture
def llm():
    return ScriptedModel()


@pytest.fixture
def client(db, llm):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_llm] = lambda: llm
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", full_name=None, email=None, password="secret1"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        now = utcnow()
        user_id = db["user"].insert_one({
            "email": email,
            "full_name": full_name or f"User {counter['n']}",
            "password_hash": get_password_hash(password),
            "role": role,
            "created_at": now,
            "updated_at": now,
        }).inserted_id
        token = IdentityProvider(db).create_token(str(user_id), email)["access_token"]
        user = CurrentUser(id=str(user_id), email=email, role=role, token=token)
        return user, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def make_product(db):
    def _make(approved=True, **overrides):
        fields = {"title": "Widget", "price": 10.0, "stock": 5}
        fields.update(overrides)
        return Catalog(db).create_product(Product(**fields), approved=approved)

    return _make


@pytest.fixture
def address():
    return ShippingAddress(
        full_name="Ada Lovelace",
        address_line_1="12 Analytical Way",
        city="London",
        state="LDN",
        postal_code="N1 9GU",
        phone="+44 20 7946 0000",
    )


@pytest.fixture
def address_json(address):
    return address.model_dump()


@pytest.fixture
def stock(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]

    return _stock
