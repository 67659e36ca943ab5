"""
Shared fixtures for billing engine tests.

FakeDatabase mimics the slice of the motor API the billing service uses
(find_one, find().sort().limit().to_list(), insert_one, update_one,
find_one_and_update, delete_one, delete_many, create_index) and rolls every
collection back when a transaction block raises. Unique indexes are enforced
on insert.
"""
import copy
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from models import LineItem, LineItemProgress, PaymentApplication
from core.baseline_ledger import BaselineLedger
from core.line_item_catalog import LineItemCatalog
from core.approval_workflow import PaymentApplicationWorkflow


CONTRACT_ID = "contract-1"
PROJECT_ID = "project-1"
CONTRACTOR_ID = "contractor-1"

PM = {"user_id": "pm-1", "role": "ProjectManager", "name": "Pat Manager"}
ADMIN = {"user_id": "admin-1", "role": "Admin", "name": "Ada Admin"}
SUB = {"user_id": "sub-1", "role": "Other", "name": "Sam Sub"}
OUTSIDER = {"user_id": "pm-2", "role": "ProjectManager", "name": "Olive Outsider"}
READER = {"user_id": "viewer-1", "role": "Other", "name": "Vic Viewer"}


# =============================================================================
# FAKE MOTOR
# =============================================================================

def _matches(doc, query):
    for key, expected in (query or {}).items():
        if isinstance(expected, dict) and "$in" in expected:
            if doc.get(key) not in expected["$in"]:
                return False
        elif doc.get(key) != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d.get(key), reverse=direction == -1)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        docs = [copy.deepcopy(d) for d in self._docs]
        return docs if length is None else docs[:length]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.fail_next_insert = False
        self.unique_keys = []
        self.indexes = []

    def seed(self, *docs):
        self.docs.extend(copy.deepcopy(d) for d in docs)

    async def find_one(self, query, projection=None, session=None):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, session=None):
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    async def insert_one(self, doc, session=None):
        if self.fail_next_insert:
            self.fail_next_insert = False
            raise RuntimeError(f"insert into {self.name} failed")
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        if any(d["_id"] == doc["_id"] for d in self.docs):
            raise DuplicateKeyError(f"duplicate _id {doc['_id']}")
        for fields in self.unique_keys:
            key = tuple(doc.get(f) for f in fields)
            if any(tuple(d.get(f) for f in fields) == key for d in self.docs):
                raise DuplicateKeyError(f"duplicate key {fields}={key}")
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def create_index(self, keys, unique=False, name=None, session=None):
        self.indexes.append(keys)
        if unique:
            self.unique_keys.append([field for field, _ in keys])
        return name or "_".join(f"{field}_{direction}" for field, direction in keys)

    async def update_one(self, query, update, session=None):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def find_one_and_update(self, query, update, session=None):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                doc.update(copy.deepcopy(update.get("$set", {})))
                return before
        return None

    async def delete_one(self, query, session=None):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query, session=None):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, query)]
        return SimpleNamespace(deleted_count=before - len(self.docs))


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def snapshot(self):
        return {name: copy.deepcopy(c.docs) for name, c in self._collections.items()}

    def restore(self, snapshot):
        for name, collection in self._collections.items():
            collection.docs = copy.deepcopy(snapshot.get(name, []))


class FakeTransaction:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        self._snapshot = self.db.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.db.restore(self._snapshot)
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


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def catalog():
    return LineItemCatalog(CONTRACT_ID, 10000, [
        LineItem(id="li-1", contract_id=CONTRACT_ID, item_number="1",
                 description="Framing", scheduled_value=6000),
        LineItem(id="li-2", contract_id=CONTRACT_ID, item_number="2",
                 description="Drywall", scheduled_value=4000),
    ])


@pytest.fixture
def empty_ledger():
    return BaselineLedger(CONTRACT_ID)


@pytest.fixture
def workflow():
    return PaymentApplicationWorkflow()


@pytest.fixture
def make_application():
    def _make(status="draft", lines=None, app_id="app-1", **extra):
        if lines is None:
            lines = [
                LineItemProgress(line_item_id="li-1", submitted_percent=50),
                LineItemProgress(line_item_id="li-2", submitted_percent=25),
            ]
        return PaymentApplication(
            id=app_id,
            contract_id=CONTRACT_ID,
            project_id=PROJECT_ID,
            contractor_id=CONTRACTOR_ID,
            status=status,
            line_items=lines,
            **extra
        )
    return _make


# =============================================================================
# PERSISTENCE FIXTURES
# =============================================================================

@pytest.fixture
def fake_db():
    db = FakeDatabase()
    db.contracts.seed({
        "_id": CONTRACT_ID,
        "project_id": PROJECT_ID,
        "contractor_id": CONTRACTOR_ID,
        "contract_amount": 10000.0
    })
    db.line_items.seed(
        {"_id": "li-1", "contract_id": CONTRACT_ID, "item_number": "1",
         "description": "Framing", "scheduled_value": 6000.0},
        {"_id": "li-2", "contract_id": CONTRACT_ID, "item_number": "2",
         "description": "Drywall", "scheduled_value": 4000.0},
    )
    db.users.seed(
        {"_id": PM["user_id"], "name": PM["name"], "role": PM["role"], "active_status": True},
        {"_id": ADMIN["user_id"], "name": ADMIN["name"], "role": ADMIN["role"], "active_status": True},
        {"_id": SUB["user_id"], "name": SUB["name"], "role": SUB["role"], "active_status": True},
        {"_id": OUTSIDER["user_id"], "name": OUTSIDER["name"], "role": OUTSIDER["role"], "active_status": True},
        {"_id": READER["user_id"], "name": READER["name"], "role": READER["role"], "active_status": True},
    )
    db.user_project_map.seed(
        {"user_id": PM["user_id"], "project_id": PROJECT_ID, "read_access": True, "write_access": True},
        {"user_id": SUB["user_id"], "project_id": PROJECT_ID, "read_access": True, "write_access": True},
        {"user_id": READER["user_id"], "project_id": PROJECT_ID, "read_access": True, "write_access": False},
    )
    return db


@pytest.fixture
def fake_client(fake_db):
    return FakeClient(fake_db)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, application):
        self.events.append((event, application.id))


@pytest.fixture
def notifier():
    return RecordingNotifier()
