import itertools
import os
from datetime import timedelta

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RESEND_API_KEY"] = ""
os.environ["WHATSAPP_PHONE_NUMBER_ID"] = ""
os.environ["WHATSAPP_ACCESS_TOKEN"] = ""

import mongomock
import pytest

import database

database.db = mongomock.MongoClient()["angel_baby_dresses_test"]

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
import pricing  # noqa: E402
from auth import create_access_token, hash_password  # noqa: E402
from schemas import Category, Product, User  # noqa: E402
from utils import utcnow  # noqa: E402

PASSWORD = "secret123"
_slugs = itertools.count(1)


@pytest.fixture(autouse=True)
def db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    pricing.clear_sales_cache()
    yield database.db
    pricing.clear_sales_cache()


@pytest.fixture
def client():
    return TestClient(main.app)


def _create_user(db, email, role="customer", name="Test User", phone="03001234567"):
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(PASSWORD),
        phone=phone,
        role=role,
    ).model_dump()
    db["user"].insert_one(user)
    return user


def _headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture
def customer(db):
    return _create_user(db, "ayesha@example.com", name="Ayesha Khan")


@pytest.fixture
def customer_headers(customer):
    return _headers(customer)


@pytest.fixture
def other_customer(db):
    return _create_user(db, "bilal@example.com", name="Bilal Ahmed", phone="03111234567")


@pytest.fixture
def other_headers(other_customer):
    return _headers(other_customer)


@pytest.fixture
def admin(db):
    return _create_user(db, "owner@example.com", role="admin", name="Shop Owner")


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)


@pytest.fixture
def category(db):
    doc = Category(name={"en": "Frocks", "ur": "فراک"}, slug="frocks").model_dump()
    db["category"].insert_one(doc)
    return doc


@pytest.fixture
def make_product(db, category):
    def _make(**overrides):
        n = next(_slugs)
        values = {
            "name": {"en": f"Party Frock {n}"},
            "slug": f"party-frock-{n}",
            "description": {"en": "Cotton party frock with lace trim"},
            "price": 1000,
            "stock": 10,
            "category": category["_id"],
        }
        values.update(overrides)
        doc = Product(**values).model_dump()
        db["product"].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def make_sale(db):
    def _make(**overrides):
        now = utcnow()
        values = {
            "name": {"en": "Eid Sale"},
            "type": "percentage",
            "discount_value": 20,
            "applicable_to": "all",
            "categories": [],
            "products": [],
            "excluded_products": [],
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=1),
            "is_active": True,
            "priority": 0,
            "usage_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        db["sale"].insert_one(values)
        pricing.clear_sales_cache()
        return values
    return _make


@pytest.fixture
def make_coupon(db):
    def _make(**overrides):
        now = utcnow()
        values = {
            "code": "WELCOME10",
            "type": "percentage",
            "discount_value": 10,
            "max_discount": None,
            "min_order_amount": 0,
            "applicable_to": "all",
            "categories": [],
            "products": [],
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=1),
            "is_active": True,
            "usage_limit": None,
            "usage_per_user": 1,
            "usage_count": 0,
            "used_by": [],
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        db["coupon"].insert_one(values)
        return values
    return _make


SHIPPING_ADDRESS = {
    "full_name": "Ayesha Khan",
    "phone": "03001234567",
    "email": "ayesha@example.com",
    "address": "House 12, Street 4, Gulberg",
    "city": "Lahore",
    "province": "Punjab",
}


@pytest.fixture
def shipping_address():
    return dict(SHIPPING_ADDRESS)


@pytest.fixture
def place_order(client):
    def _place(headers, product, quantity=1, **extra):
        res = client.post("/api/cart/add", json={"product_id": str(product["_id"]), "quantity": quantity}, headers=headers)
        assert res.status_code == 200, res.text
        body = {"shipping_address": dict(SHIPPING_ADDRESS), "payment_method": "easypaisa", **extra}
        res = client.post("/api/orders", json=body, headers=headers)
        assert res.status_code == 201, res.text
        return res.json()["order"]
    return _place
