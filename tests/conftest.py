import asyncio
from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password, issue_token
from config import Settings, get_settings
from context import build_context
from database import create_document, ensure_indexes, get_db
from mailer import MailerError, get_mailer
from main import app


class FakeCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class FakeCollection:
    """Awaitable facade over a mongomock collection that records every query."""

    def __init__(self, collection, name, queries):
        self._collection = collection
        self.name = name
        self._queries = queries

    def _record(self, op, filter=None):
        self._queries.append((self.name, op, filter))

    def find(self, filter=None, projection=None):
        self._record("find", filter)
        return FakeCursor(self._collection.find(filter or {}, projection))

    async def find_one(self, filter=None, projection=None):
        self._record("find_one", filter)
        await asyncio.sleep(0)
        return self._collection.find_one(filter or {}, projection)

    async def insert_one(self, doc):
        self._record("insert_one")
        await asyncio.sleep(0)
        return self._collection.insert_one(doc)

    async def update_one(self, filter, update):
        self._record("update_one", filter)
        await asyncio.sleep(0)
        return self._collection.update_one(filter, update)

    async def delete_one(self, filter):
        self._record("delete_one", filter)
        await asyncio.sleep(0)
        return self._collection.delete_one(filter)

    async def count_documents(self, filter):
        self._record("count_documents", filter)
        return self._collection.count_documents(filter)

    async def create_index(self, keys, **kwargs):
        return self._collection.create_index(keys, **kwargs)


class FakeDatabase:
    def __init__(self):
        self._db = mongomock.MongoClient()["storefront_test"]
        self.queries = []

    def __getitem__(self, name):
        return FakeCollection(self._db[name], name, self.queries)

    async def command(self, name):
        return {"ok": 1.0}

    def queries_for(self, collection, op=None):
        return [q for q in self.queries if q[0] == collection and (op is None or q[1] == op)]


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, to, subject, body):
        if self.fail:
            raise MailerError("SMTP server unavailable")
        self.sent.append({"to": to, "subject": subject, "body": body})


@pytest.fixture
def db():
    fake = FakeDatabase()
    asyncio.run(ensure_indexes(fake))
    return fake


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", stripe_secret_key="sk_test_123")


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, mailer, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db, settings):
    """Insert a user straight into the store and return ``(user, auth_headers)``."""
    counter = iter(range(1000))

    def _make(role="customer", email=None, password="secret123"):
        n = next(counter)
        user = asyncio.run(create_document(db, "user", {
            "name": f"User {n}",
            "email": email or f"user{n}@example.com",
            "role": role,
            "address": None,
            "password_hash": hash_password(password),
        }))
        user.pop("password_hash")
        token = issue_token(user["id"], settings)
        return user, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def make_ctx(db, settings, mailer):
    def _make(user=None):
        return build_context(db, settings, mailer, user)

    return _make


@pytest.fixture
def expired_token(settings):
    def _make(user_id):
        return issue_token(user_id, settings, expires_delta=timedelta(seconds=-5))

    return _make
