"""Shared fixtures: an in-memory MongoDB, a Store over it and an API client."""
import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Identity, hash_password, open_session
from database import ensure_indexes, get_db
from main import app
from repository import Store
from schemas import Role


@pytest.fixture
def database():
    db = mongomock.MongoClient().get_database("online_store_test")
    ensure_indexes(db)
    return db


@pytest.fixture
def store(database):
    return Store(database)


@pytest.fixture
def client(database):
    app.dependency_overrides[get_db] = lambda: database
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_customer(store):
    def _make(username, role=Role.CUSTOMER, password="secret123"):
        return store.customers.create({
            "name": username.title(),
            "email": f"{username}@example.com",
            "phone": "",
            "address": "1 Main St",
            "username": username,
            "password_hash": hash_password(password),
            "role": role.value,
        })
    return _make


@pytest.fixture
def customer(make_customer):
    return make_customer("alice")


@pytest.fixture
def other_customer(make_customer):
    return make_customer("bob")


@pytest.fixture
def admin(make_customer):
    return make_customer("root", role=Role.ADMIN)


@pytest.fixture
def identity():
    def _identity(doc):
        return Identity(customer_id=doc["id"], role=Role(doc["role"]))
    return _identity


@pytest.fixture
def headers_for(store):
    def _headers(doc):
        return {"Authorization": f"Bearer {open_session(store, doc['id'])}"}
    return _headers


@pytest.fixture
def make_product(store):
    def _make(name="Widget", price=10.0, stock=5, category_id=None):
        return store.products.create({
            "name": name,
            "description": f"A {name.lower()}",
            "price": price,
            "stock": stock,
            "category_id": category_id,
            "image_url": None,
        })
    return _make
