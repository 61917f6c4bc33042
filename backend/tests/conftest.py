"""
Shared fixtures: an in-memory Motor-style database and the seeded plan catalogue.

FakeDatabase covers the slice of the Motor API the services use: find/find_one,
insert/update/delete, count_documents, unique (optionally partial) indexes and
sessions whose transactions roll back on error.
"""

import copy
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from models import PaymentRecord, to_bson
from scripts.seed_membership_plans import build_plans
from services.membership_service import MembershipService, ensure_indexes

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _compare(value, operator, expected):
    if operator == "$ne":
        return value != expected
    if operator == "$in":
        return value in expected
    if operator == "$exists":
        return (value is not None) == bool(expected)
    if value is None:
        return False
    if operator == "$gt":
        return value > expected
    if operator == "$gte":
        return value >= expected
    if operator == "$lt":
        return value < expected
    if operator == "$lte":
        return value <= expected
    raise NotImplementedError(operator)


def matches(document, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
            continue
        value = document.get(key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, expected) for op, expected in condition.items()):
                return False
        elif value != condition:
            return False
    return True


def apply_update(document, update, inserting=False):
    for field, value in update.get("$set", {}).items():
        document[field] = copy.deepcopy(value)
    for field, amount in update.get("$inc", {}).items():
        document[field] = document.get(field, 0) + amount
    if inserting:
        for field, value in update.get("$setOnInsert", {}).items():
            document[field] = copy.deepcopy(value)


class FakeCursor:
    def __init__(self, documents):
        self._documents = documents

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, field_direction in reversed(keys):
            self._documents.sort(
                key=lambda doc: (doc.get(field) is not None, doc.get(field)),
                reverse=field_direction < 0,
            )
        return self

    async def to_list(self, length=None):
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.documents = []
        self.unique_indexes = []
        self.index_names = []

    async def create_index(self, keys, unique=False, partialFilterExpression=None, name=None, **kwargs):
        fields = (keys,) if isinstance(keys, str) else tuple(field for field, _ in keys)
        if unique:
            self.unique_indexes.append((fields, partialFilterExpression))
        self.index_names.append(name or "_".join(fields))
        return name

    async def index_information(self):
        return {name: {} for name in self.index_names}

    def _check_unique(self, candidate, ignore=None):
        for fields, partial in self.unique_indexes:
            if partial and not matches(candidate, partial):
                continue
            if any(candidate.get(field) is None for field in fields):
                continue
            for other in self.documents:
                if other is ignore or (partial and not matches(other, partial)):
                    continue
                if all(other.get(field) == candidate.get(field) for field in fields):
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {fields}", 11000
                    )

    async def find_one(self, query=None, projection=None, session=None):
        for document in self.documents:
            if matches(document, query):
                return copy.deepcopy(document)
        return None

    def find(self, query=None, projection=None, session=None):
        return FakeCursor([copy.deepcopy(doc) for doc in self.documents if matches(doc, query)])

    async def count_documents(self, query, session=None):
        return sum(1 for doc in self.documents if matches(doc, query))

    async def insert_one(self, document, session=None):
        document = copy.deepcopy(document)
        document.setdefault("_id", ObjectId())
        self._check_unique(document)
        self.documents.append(document)
        return SimpleNamespace(inserted_id=document["_id"])

    async def insert_many(self, documents, session=None):
        ids = [(await self.insert_one(doc)).inserted_id for doc in documents]
        return SimpleNamespace(inserted_ids=ids)

    async def update_one(self, query, update, upsert=False, session=None):
        for index, document in enumerate(self.documents):
            if matches(document, query):
                updated = copy.deepcopy(document)
                apply_update(updated, update)
                self._check_unique(updated, ignore=document)
                self.documents[index] = updated
                return SimpleNamespace(matched_count=1, modified_count=int(updated != document), upserted_id=None)

        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

        document = {
            key: value for key, value in query.items()
            if not key.startswith("$") and not isinstance(value, dict)
        }
        apply_update(document, update, inserting=True)
        result = await self.insert_one(document)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=result.inserted_id)

    async def update_many(self, query, update, session=None):
        modified = 0
        for index, document in enumerate(self.documents):
            if matches(document, query):
                updated = copy.deepcopy(document)
                apply_update(updated, update)
                self.documents[index] = updated
                modified += 1
        return SimpleNamespace(matched_count=modified, modified_count=modified)

    async def delete_many(self, query, session=None):
        before = len(self.documents)
        self.documents = [doc for doc in self.documents if not matches(doc, query)]
        return SimpleNamespace(deleted_count=before - len(self.documents))


class FakeTransaction:
    def __init__(self, db):
        self.db = db
        self.snapshot = None

    async def __aenter__(self):
        self.snapshot = {
            name: copy.deepcopy(collection.documents) for name, collection in self.db.collections.items()
        }
        self.db.transactions_started += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            for name, collection in self.db.collections.items():
                collection.documents = self.snapshot.get(name, [])
            self.db.transactions_aborted += 1
        return False


class FakeSession:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def start_transaction(self):
        return FakeTransaction(self.db)


class FakeClient:
    def __init__(self, db):
        self.db = db

    async def start_session(self):
        return FakeSession(self.db)

    def close(self):
        pass


class FakeDatabase:
    def __init__(self):
        self.collections = {}
        self.client = FakeClient(self)
        self.transactions_started = 0
        self.transactions_aborted = 0

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


def run_sync(coro):
    """Drive a coroutine that never suspends (everything here is in-memory) without an event loop."""
    try:
        coro.send(None)
    except StopIteration as stop:
        return stop.value
    coro.close()
    raise RuntimeError("coroutine suspended; FakeDatabase calls never wait")


def make_payment(razorpay_payment_id, user_id="user-1", amount=4999, **kwargs):
    return PaymentRecord(
        user_id=user_id,
        amount=amount,
        razorpay_payment_id=razorpay_payment_id,
        **kwargs,
    )


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def plans():
    return {plan.id: plan for plan in build_plans()}


@pytest.fixture
def db(plans):
    database = FakeDatabase()
    run_sync(ensure_indexes(database))
    for plan in plans.values():
        run_sync(database.plans.insert_one(to_bson(plan.model_dump(mode="python"))))
    return database


@pytest.fixture
def service(db):
    return MembershipService(db, max_write_attempts=2)
