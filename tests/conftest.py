from uuid import uuid4

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from database import create_document, ensure_indexes
from gateway import FakeGateway, get_gateway
from main import app
from schemas import Product

SIGNING_SECRET = "test_signing_secret"

ADDRESS = {
    "street": "12 Rose Lane",
    "city": "Pune",
    "state": "MH",
    "zip_code": "411001",
    "country": "India",
}


def headers(user_id="user-a"):
    return {"X-User-Id": user_id}


@pytest.fixture()
def db():
    database_ = mongomock.MongoClient()[f"skincare_test_{uuid4().hex[:8]}"]
    ensure_indexes(database_)
    return database_


@pytest.fixture()
def gateway():
    return FakeGateway(SIGNING_SECRET)


@pytest.fixture()
def client(db, gateway):
    app.dependency_overrides[database.get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def add_product(db):
    """Factory: insert a catalog product and return its id."""

    def _add(name="Vitamin C Serum", price=100.0, category="Serums", **extra):
        product = Product(
            name=name,
            category=category,
            price=price,
            image=f"https://cdn.example.com/{name.lower().replace(' ', '-')}.jpg",
            **extra,
        )
        return create_document(db, "product", product)

    return _add
