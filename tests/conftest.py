"""Pytest fixtures for the marketplace tests."""

import threading
from contextlib import contextmanager

import mongomock
import pytest

import database
import settings
from schemas import Cart, CartItem, Coupon, Product, Seller

ADDRESS = {
    "full_name": "Asha Rao",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "zip": "560001",
    "country": "IN",
    "phone": "+91-9000000000",
}

_lock = threading.RLock()


@contextmanager
def snapshot_transaction():
    """
    Stand-in for database.transaction() on mongomock, which has no sessions.

    Transactions are serialized by a lock; on any exception every collection is
    put back the way it was when the transaction started.
    """
    with _lock:
        db = database.get_db()
        snapshot = {name: list(db[name].find()) for name in db.list_collection_names()}
        try:
            yield None
        except Exception:
            for name in db.list_collection_names():
                db[name].delete_many({})
            for name, docs in snapshot.items():
                if docs:
                    db[name].insert_many(docs)
            raise


@pytest.fixture(autouse=True)
def db(monkeypatch):
    """Fresh in-memory database per test."""
    client = mongomock.MongoClient()
    monkeypatch.setattr(database, "client", client)
    monkeypatch.setattr(database, "db", client["test"])
    monkeypatch.setattr(database, "transaction", snapshot_transaction)
    monkeypatch.setattr(settings, "TAX_RATE_PERCENT", 0.0)
    monkeypatch.setattr(settings, "SHIPPING_PER_ITEM", 0.0)
    monkeypatch.setattr(settings, "COMMISSION_RATE", 0.1)
    database.ensure_indexes()
    yield client["test"]


@pytest.fixture
def make_seller():
    def factory(store_name="Acme Store", is_verified=True, commission_rate=None):
        seller = Seller(store_name=store_name, is_verified=is_verified, commission_rate=commission_rate)
        database.create_document("seller", seller)
        return seller

    return factory


@pytest.fixture
def seller(make_seller):
    return make_seller()


@pytest.fixture
def make_product(seller):
    def factory(name="Widget", price=100.0, quantity=10, owner=None, category=None, status="approved",
                in_stock=True, **extra):
        product = Product(name=name, price=price, quantity=quantity, seller=(owner or seller).id,
                          category=category, status=status, in_stock=in_stock, **extra)
        database.create_document("product", product)
        return product

    return factory


@pytest.fixture
def make_coupon():
    def factory(code="SAVE10", discount_type="percentage", discount_value=10, **extra):
        extra.setdefault("max_usage", 100)
        coupon = Coupon(code=code, discount_type=discount_type, discount_value=discount_value, **extra)
        database.create_document("coupon", coupon)
        return coupon

    return factory


@pytest.fixture
def fill_cart():
    def factory(user_id, lines, coupon=None):
        items = [CartItem(product=p.id, seller=p.seller, quantity=q, price=p.price) for p, q in lines]
        cart = Cart(user=user_id, items=items)
        if coupon is not None:
            cart.coupon = coupon.id
            cart.applied_coupon_code = coupon.code
        database.create_document("cart", cart)
        return cart

    return factory


def stock_of(product):
    return database.get_db()["product"].find_one({"_id": product.id})["quantity"]


def coupon_doc(coupon):
    return database.get_db()["coupon"].find_one({"_id": coupon.id})
