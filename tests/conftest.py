from datetime import datetime, timedelta, timezone
from typing import Dict

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from auth import Identity, get_identity_provider
from database import OWNER_LESSONS, PUBLIC_LESSONS, USERS, ensure_indexes, get_db
from errors import Unauthorized
from lessons import LessonRepository
from payments import get_payment_gateway
from schemas import CreatorSnapshot
from storage import LocalBlobStorage, get_storage
from users import UserDirectory


class FakeIdentityProvider:
    """Accepts tokens of the form "token-<uid>" for registered identities."""

    def __init__(self):
        self.identities: Dict[str, Identity] = {}
        self.profile_updates = []

    def register(self, uid, email, name=None, picture=None):
        self.identities[f"token-{uid}"] = Identity(uid=uid, email=email, name=name, picture=picture)
        return f"token-{uid}"

    def verify_token(self, token):
        if token not in self.identities:
            raise Unauthorized("Invalid token")
        return self.identities[token]

    def update_user(self, uid, display_name=None, photo_url=None):
        self.profile_updates.append((uid, display_name, photo_url))


class FakeGateway:
    def __init__(self):
        self.intents = {}
        self.created = []

    def create_payment_intent(self, amount, metadata=None):
        self.created.append((amount, metadata))
        return "pi_secret_123"

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["wisdomVaultDB"]
    ensure_indexes(database)
    return database


@pytest.fixture
def lessons(db):
    return LessonRepository(db)


@pytest.fixture
def users(db):
    return UserDirectory(db)


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(str(tmp_path / "uploads"), "http://testserver")


@pytest.fixture
def client(db, identity, gateway, storage):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_identity_provider] = lambda: identity
    main.app.dependency_overrides[get_payment_gateway] = lambda: gateway
    main.app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def alice(client, identity):
    token = identity.register("uid-alice", "alice@example.com", name="Alice")
    client.post("/users", headers=auth(token))
    return token


@pytest.fixture
def admin(client, identity, db):
    token = identity.register("uid-admin", "admin@example.com", name="Admin")
    client.post("/users", headers=auth(token))
    db[USERS].update_one({"uid": "uid-admin"}, {"$set": {"role": "admin"}})
    return token


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def creator(name="Alice", email="alice@example.com", uid="uid-alice", photo=""):
    return CreatorSnapshot(name=name, email=email, uid=uid, photo=photo)


def draft(**overrides):
    data = {
        "title": "Patience",
        "shortDescription": "Slow is smooth",
        "fullDescription": "Smooth is fast.",
        "category": "Personal Growth",
        "emotionalTone": "Motivational",
        "visibility": "public",
        "accessLevel": "free",
        "image": "",
    }
    data.update(overrides)
    return data


def insert_lesson(db, created_at=None, **fields):
    """Write a lesson straight into both collections, bypassing the repository."""
    doc = {
        "_id": ObjectId(),
        "title": "Lesson",
        "fullDescription": "Body",
        "category": "Career",
        "visibility": "public",
        "accessLevel": "free",
        "creator": {"name": "Alice", "email": "alice@example.com", "uid": "uid-alice", "photo": ""},
        "likesCount": 0,
        "favoritesCount": 0,
        "favoritedBy": [],
        "isReported": False,
        "createdAt": created_at or datetime.now(timezone.utc),
    }
    doc.update(fields)
    db[PUBLIC_LESSONS].insert_one({**doc})
    db[OWNER_LESSONS].insert_one({**doc})
    return doc["_id"]


def days_ago(n, at=None):
    return (at or datetime.now(timezone.utc)) - timedelta(days=n)
