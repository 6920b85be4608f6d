import copy
import itertools
import os
import sys
import tempfile
from collections.abc import Iterator

import mongomock
import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.append(PROJECT_ROOT)

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="issue-uploads-"))

from auth import create_token, pwd_context  # noqa: E402
from database import USERS, create_document, get_db  # noqa: E402
from main import app  # noqa: E402

_user_seq = itertools.count(1)


@pytest.fixture
def db():
    return mongomock.MongoClient()["issue_reporter_test"]


@pytest.fixture
def client(db) -> Iterator[TestClient]:
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Insert a user and return its document plus ready-made auth headers."""

    def _make(name: str = "Citizen", is_admin: bool = False, is_active: bool = True) -> dict:
        n = next(_user_seq)
        doc = create_document(db, USERS, {
            "name": name,
            "email": f"user{n}@example.com",
            "password_hash": pwd_context.hash("secret123"),
            "is_admin": is_admin,
            "is_active": is_active,
        })
        token = create_token(str(doc["_id"]), is_admin)
        return {**doc, "id": str(doc["_id"]), "headers": {"Authorization": f"Bearer {token}"}}

    return _make


class _StaleCollection:
    """Serves ``snapshot`` for the first ``stale`` find_one calls, then reads through."""

    def __init__(self, collection, snapshot: dict, stale: int):
        self._collection = collection
        self._snapshot = snapshot
        self._stale = stale
        self.reads = 0

    def find_one(self, *args, **kwargs):
        self.reads += 1
        if self._stale:
            self._stale -= 1
            return copy.deepcopy(self._snapshot)
        return self._collection.find_one(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class _StaleDatabase:
    def __init__(self, database, name: str, collection: _StaleCollection):
        self._database = database
        self._name = name
        self.collection = collection

    def __getitem__(self, name):
        if name == self._name:
            return self.collection
        return self._database[name]


@pytest.fixture
def stale_reads(db):
    """Wrap ``db`` so reads of one document return an outdated copy, as if another writer raced ahead."""

    def _wrap(collection_name: str, snapshot: dict, stale: int = 1) -> _StaleDatabase:
        collection = _StaleCollection(db[collection_name], snapshot, stale)
        return _StaleDatabase(db, collection_name, collection)

    return _wrap


@pytest.fixture
def issue_payload():
    def _payload(**overrides) -> dict:
        payload = {
            "title": "Broken streetlight",
            "description": "The streetlight at the corner has been out for a week.",
            "category": "electricity",
            "priority": "medium",
            "location": {
                "address": "12 Elm Street",
                "coordinates": {"latitude": 40.7128, "longitude": -74.006},
            },
            "tags": ["night", "safety"],
        }
        payload.update(overrides)
        return payload

    return _payload
