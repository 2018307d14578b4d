import os

import mongomock
import pytest

os.environ["SEED_ON_STARTUP"] = "0"

import database  # noqa: E402

database.db = mongomock.MongoClient()["ekomart_test"]

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from database import create_document, db  # noqa: E402
from schemas import Product, User  # noqa: E402
from security import create_access_token  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    yield


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


def _make_user(name="Shopper", email="shopper@example.com", role="customer"):
    uid = create_document("user", User(name=name, email=email, role=role, password_hash=None))
    token = create_access_token({"sub": uid})
    return uid, {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user():
    return _make_user


@pytest.fixture
def customer():
    return _make_user("Rahim", "rahim@example.com")


@pytest.fixture
def other_customer():
    return _make_user("Karim", "karim@example.com")


@pytest.fixture
def admin():
    return _make_user("Admin", "admin@example.com", role="admin")


@pytest.fixture
def make_product():
    def _make(name="Organic Bananas", price=2.0, stock=10, **extra):
        slug = name.lower().replace(" ", "-")
        product = Product(name=name, slug=slug, sku=slug.upper(), price=price, category="fruits", stock=stock, **extra)
        return create_document("product", product)
    return _make
