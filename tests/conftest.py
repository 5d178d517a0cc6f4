"""Shared fixtures: in-memory Mongo, fake payment provider, signed tokens.

Invariants:
    - Every test gets a fresh mongomock database with the production indexes
    - get_db and get_payment_gateway are overridden on the app, never patched in place
    - Tokens are minted by the same verifier the auth gate uses
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import get_verifier
from database import ensure_indexes, get_db
from main import app
from payments import get_payment_gateway
from schemas import CLASSES, Class


class FakeGateway:
    """Payment provider double: intents default to succeeded."""

    def __init__(self):
        self.statuses = {}
        self.created = []
        self.retrieved = []
        self.fail_with = None

    def create_intent(self, amount, currency, metadata):
        if self.fail_with:
            raise self.fail_with
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append({"amount": amount, "currency": currency, "metadata": metadata})
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def retrieve_status(self, intent_id):
        if self.fail_with:
            raise self.fail_with
        self.retrieved.append(intent_id)
        return self.statuses.get(intent_id, "succeeded")


@pytest.fixture
def db():
    database = mongomock.MongoClient()["edu-manage-test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with_client = TestClient(app)
    yield with_client
    app.dependency_overrides.clear()


@pytest.fixture
def token():
    return get_verifier().issue({"email": "student@example.com"})


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_class(db):
    """Insert a class directly and return its id as a string."""

    def _make(status="approved", enrolled=None, title="Algebra I", teacher_uid="teacher-1", price=49.0):
        doc = Class(
            title=title,
            teacherUid=teacher_uid,
            price=price,
            status=status,
            enrolledStudents=list(enrolled or []),
        ).model_dump()
        return str(db[CLASSES].insert_one(doc).inserted_id)

    return _make
