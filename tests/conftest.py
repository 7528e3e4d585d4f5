import itertools
import os
import tempfile

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["UPLOAD_ROOT"] = tempfile.mkdtemp(prefix="ferrari-uploads-")
os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

import uploads
from auth import hash_password, issue_token
from database import ensure_indexes, get_db, now
from main import app

PASSWORD = "secret123"

ADDRESS = {
    "street": "Via Abetone Inferiore",
    "number": "4",
    "complement": "",
    "neighborhood": "Centro",
    "city": "Maranello",
    "state": "MO",
    "zip_code": "41053",
}

PAYMENT_METHOD = {
    "type": "credit",
    "card_number": "4111111111111111",
    "card_holder_name": "Enzo Ferrari",
    "expiration_date": "12/30",
    "cvv": "123",
}


def auth_headers(user):
    return {"Authorization": f"Bearer {issue_token(user)}"}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["ferrari_store_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def upload_root(tmp_path, monkeypatch):
    monkeypatch.setattr(uploads, "UPLOAD_ROOT", str(tmp_path))
    uploads.ensure_dirs()
    return tmp_path


@pytest.fixture
def client(db, upload_root):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(admin=False, **fields):
        n = next(counter)
        doc = {
            "name": f"User {n}",
            "email": f"user{n}@example.com",
            "phone": "11999990000",
            "national_id": f"{n:011d}",
            "password_hash": hash_password(PASSWORD),
            "admin": admin,
            "image": None,
            "address": None,
            "payment_method": None,
            "cart": [],
            "orders": [],
            "created_at": now(),
            "updated_at": now(),
        }
        doc.update(fields)
        db["user"].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_product(db):
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        doc = {
            "name": f"Ferrari Model {n}",
            "type": "car",
            "price": 10.0,
            "images": [f"car{n}.png"],
            "description": "1:18 scale die-cast model",
            "featured": False,
            "stock": 10,
            "sold": 0,
            "sound_file": None,
            "created_at": now(),
            "updated_at": now(),
        }
        doc.update(fields)
        db["product"].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(admin=True)


@pytest.fixture
def customer(make_user):
    return make_user()
