from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
import notifications
from auth import create_access_token
from config import Config
from database import ensure_indexes, get_db

PASSPHRASE = "jt7NOE43FZPn"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["tasselgroup_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def passphrase(monkeypatch):
    monkeypatch.setattr(Config, "PAYFAST_PASSPHRASE", PASSPHRASE)
    return PASSPHRASE


@pytest.fixture
def sent_emails(monkeypatch):
    """Records confirmation emails instead of talking to SMTP."""
    sent = []

    def fake_send(user, kind, reference, amount, record):
        sent.append({"user": user, "kind": kind, "reference": reference, "amount": amount, "record": record})

    monkeypatch.setattr(notifications, "send_confirmation_emails", fake_send)
    return sent


def _insert(db, collection, doc):
    db[collection].insert_one(doc)
    return doc


@pytest.fixture
def customer(db):
    return _insert(db, "user", {"name": "Thandi Mokoena", "email": "thandi@example.com", "phone": "082 555 1234", "role": "customer", "address": "12 Long Street"})


@pytest.fixture
def staff(db):
    return _insert(db, "user", {"name": "Lerato Dlamini", "email": "lerato@tassel.co.za", "role": "staff"})


@pytest.fixture
def admin(db):
    return _insert(db, "user", {"name": "Admin", "email": "admin@tassel.co.za", "role": "admin"})


@pytest.fixture
def product(db):
    return _insert(db, "product", {"name": "Argan Hair Oil", "price": 100.0, "stockQuantity": 10, "inStock": True, "tags": ["hair"]})


@pytest.fixture
def service(db):
    return _insert(db, "service", {"name": "Deep Tissue Massage", "price": 450.0, "duration": "60 min"})


@pytest.fixture
def gift_package(db):
    return _insert(db, "giftpackage", {"name": "Spa Day", "basePrice": 1200.0})


def make_voucher(db, code="SAVE10", discount=10, type="percentage", max_uses=5, used=0, **extra):
    doc = {
        "code": code,
        "discount": discount,
        "type": type,
        "maxUses": max_uses,
        "used": used,
        "validUntil": datetime.now(timezone.utc) + timedelta(days=30),
        "isActive": True,
        **extra,
    }
    return _insert(db, "voucher", doc)


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token(str(user['_id']))}"}


def tomorrow():
    return (datetime.now(timezone.utc) + timedelta(days=1)).date().isoformat()
