# shared fixtures for backend api tests
# provides mock db (with unique/partial index enforcement), test users, a fake ai gateway and httpx test clients

import copy
import json
import re

import pytest
import pytest_asyncio
from unittest.mock import MagicMock
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from fastapi import HTTPException, Request
from httpx import AsyncClient, ASGITransport

from therapy_chat.config import Settings
from therapy_chat.main import app
from therapy_chat.dependencies import get_current_user, get_services
from therapy_chat.services.ai_gateway import Completion, ModerationResult, ModerationVerdict, get_ai_gateway
from therapy_chat.services.db import ensure_indexes, get_db
from therapy_chat.services.registry import build_services


# test ids (fixed so a second import of this module sees the same users)
THERAPIST_OID = ObjectId("64b000000000000000000001")
THERAPIST_2_OID = ObjectId("64b000000000000000000002")
PATIENT_OID = ObjectId("64b000000000000000000011")
PATIENT_2_OID = ObjectId("64b000000000000000000012")
MULTI_GROUP_PATIENT_OID = ObjectId("64b000000000000000000013")
UNGROUPED_PATIENT_OID = ObjectId("64b000000000000000000014")
ADMIN_OID = ObjectId("64b000000000000000000021")

THERAPIST_ID = str(THERAPIST_OID)
THERAPIST_2_ID = str(THERAPIST_2_OID)
PATIENT_ID = str(PATIENT_OID)
PATIENT_2_ID = str(PATIENT_2_OID)
MULTI_GROUP_PATIENT_ID = str(MULTI_GROUP_PATIENT_OID)
UNGROUPED_PATIENT_ID = str(UNGROUPED_PATIENT_OID)
ADMIN_ID = str(ADMIN_OID)

ANXIETY_GROUP = "anxiety-support"
MOOD_GROUP = "mood-recovery"


# test user documents (as they'd appear from mongodb)

THERAPIST_DOC = {
    "_id": THERAPIST_OID,
    "email": "dr.chen@therapychat.com",
    "name": "Dr. Sarah Chen",
    "role": "therapist",
    "group_ids": [],
}

THERAPIST_2_DOC = {
    "_id": THERAPIST_2_OID,
    "email": "dr.haddad@therapychat.com",
    "name": "Dr. Omar Haddad",
    "role": "therapist",
    "group_ids": [],
}

PATIENT_DOC = {
    "_id": PATIENT_OID,
    "email": "alex.rivera@email.com",
    "name": "Alex Rivera",
    "role": "patient",
    "group_ids": [ANXIETY_GROUP],
}

PATIENT_2_DOC = {
    "_id": PATIENT_2_OID,
    "email": "jordan.kim@email.com",
    "name": "Jordan Kim",
    "role": "patient",
    "group_ids": [MOOD_GROUP],
}

MULTI_GROUP_PATIENT_DOC = {
    "_id": MULTI_GROUP_PATIENT_OID,
    "email": "riley.nguyen@email.com",
    "name": "Riley Nguyen",
    "role": "patient",
    "group_ids": [ANXIETY_GROUP, MOOD_GROUP],
}

UNGROUPED_PATIENT_DOC = {
    "_id": UNGROUPED_PATIENT_OID,
    "email": "casey.thompson@email.com",
    "name": "Casey Thompson",
    "role": "patient",
    "group_ids": [],
}

ADMIN_DOC = {
    "_id": ADMIN_OID,
    "email": "admin@therapychat.com",
    "name": "Clinic Admin",
    "role": "admin",
    "group_ids": [],
}

GROUP_DOCS = [
    {"_id": ANXIETY_GROUP, "name": "Anxiety Support"},
    {"_id": MOOD_GROUP, "name": "Mood Recovery"},
]

# dr. chen monitors both groups, dr. haddad only mood-recovery
ASSIGNMENT_DOCS = [
    {"therapist_id": THERAPIST_ID, "group_id": ANXIETY_GROUP},
    {"therapist_id": THERAPIST_ID, "group_id": MOOD_GROUP},
    {"therapist_id": THERAPIST_2_ID, "group_id": MOOD_GROUP},
]


def as_user(doc: dict) -> dict:
    """user dict as get_current_user returns it"""
    user = copy.deepcopy(doc)
    user["id"] = str(user.pop("_id"))
    return user


THERAPIST = as_user(THERAPIST_DOC)
THERAPIST_2 = as_user(THERAPIST_2_DOC)
PATIENT = as_user(PATIENT_DOC)
PATIENT_2 = as_user(PATIENT_2_DOC)
MULTI_GROUP_PATIENT = as_user(MULTI_GROUP_PATIENT_DOC)
UNGROUPED_PATIENT = as_user(UNGROUPED_PATIENT_DOC)
ADMIN = as_user(ADMIN_DOC)


# structured ai replies

def structured_reply(text: str, danger_level=None, concerns=(), safety_message=None) -> str:
    """chat model output in the structured response shape"""
    return json.dumps({
        "type": "response",
        "safety": {
            "is_safe": danger_level is None,
            "danger_level": danger_level,
            "detected_concerns": list(concerns),
            "requires_intervention": danger_level in ("critical", "emergency"),
            "safety_message": safety_message,
        },
        "content": {"text_blocks": [{"type": "paragraph", "content": text}]},
        "metadata": {},
    })


class FakeGateway:
    """stand-in for AIGateway: queued completions and moderation verdicts, records calls"""

    def __init__(self):
        self.replies = []
        self.default_reply = structured_reply("Thank you for sharing that with me. How are you feeling right now?")
        self.calls = []
        self.moderation_enabled = False
        self.moderation_results = []
        self.moderation_calls = []
        self.transcripts = []
        self.transcribe_calls = []

    @property
    def moderation_available(self) -> bool:
        return self.moderation_enabled

    async def complete(self, messages, model=None, temperature=None, max_tokens=None):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else self.default_reply
        if isinstance(reply, Exception):
            raise reply
        return Completion(content=reply, tokens_used=42, raw_response={"model": "fake"})

    async def moderate(self, text):
        self.moderation_calls.append(text)
        result = self.moderation_results.pop(0) if self.moderation_results else ModerationResult(ModerationVerdict.CLEAR)
        if isinstance(result, Exception):
            raise result
        return result

    async def transcribe(self, audio, mime_type, model, language=None):
        self.transcribe_calls.append({"audio": audio, "mime_type": mime_type, "model": model, "language": language})
        text = self.transcripts.pop(0) if self.transcripts else "I had a rough day at work"
        if isinstance(text, Exception):
            raise text
        return text


# async cursor mock

def _lookup(doc, key):
    """(present, value) for a dotted key"""
    current = doc
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _assign(doc, key, value):
    parts = key.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _remove(doc, key):
    parts = key.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def _sort_value(value):
    # None sorts first, like mongodb
    return (value is not None, value if value is not None else 0)


class AsyncCursorMock:
    """mock for motor's async cursor: supports async for and chained methods"""

    def __init__(self, data=None):
        self._data = data or []
        self._index = 0

    def sort(self, key_or_list, direction=1):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction)]
        for key, order in reversed(keys):
            self._data = sorted(
                self._data,
                key=lambda d: _sort_value(_lookup(d, key)[1]),
                reverse=order == -1,
            )
        return self

    def skip(self, n):
        self._data = self._data[n:]
        return self

    def limit(self, n):
        if n:
            self._data = self._data[:n]
        return self

    def __aiter__(self):
        self._index = 0
        return self

    async def __anext__(self):
        if self._index >= len(self._data):
            raise StopAsyncIteration
        item = self._data[self._index]
        self._index += 1
        return item

    async def to_list(self, length=None):
        if length is not None:
            return self._data[:length]
        return self._data


class MockCollection:
    """mock for a motor collection with async methods and unique index checks"""

    def __init__(self, data=None):
        self._data = [copy.deepcopy(d) for d in (data or [])]
        self._indexes = []
        self.inserted = []

    # queries

    def find(self, query=None, projection=None):
        results = [copy.deepcopy(d) for d in self._data if self._matches(d, query or {})]
        return AsyncCursorMock(results)

    async def find_one(self, query=None, projection=None):
        for doc in self._data:
            if self._matches(doc, query or {}):
                return copy.deepcopy(doc)
        return None

    async def count_documents(self, query=None):
        return len([d for d in self._data if self._matches(d, query or {})])

    # writes

    async def insert_one(self, doc):
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self._data.append(stored)
        self.inserted.append(stored)
        result = MagicMock()
        result.inserted_id = doc["_id"]
        return result

    async def update_one(self, query, update, upsert=False):
        result = MagicMock()
        result.modified_count = 0
        result.upserted_id = None
        for index, doc in enumerate(self._data):
            if self._matches(doc, query):
                updated = self._apply(doc, update)
                if updated != doc:
                    self._check_unique(updated, skip=index)
                    self._data[index] = updated
                    result.modified_count = 1
                return result
        if upsert:
            doc = self._upsert_doc(query, update)
            await self.insert_one(doc)
            result.upserted_id = doc["_id"]
        return result

    async def update_many(self, query, update):
        result = MagicMock()
        result.modified_count = 0
        for index, doc in enumerate(self._data):
            if self._matches(doc, query):
                updated = self._apply(doc, update)
                if updated != doc:
                    self._check_unique(updated, skip=index)
                    self._data[index] = updated
                    result.modified_count += 1
        return result

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE, **kwargs):
        for index, doc in enumerate(self._data):
            if self._matches(doc, query):
                updated = self._apply(doc, update)
                self._check_unique(updated, skip=index)
                self._data[index] = updated
                return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else doc)
        if upsert:
            doc = self._upsert_doc(query, update)
            await self.insert_one(doc)
            return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None
        return None

    async def delete_many(self, query):
        kept = [d for d in self._data if not self._matches(d, query)]
        result = MagicMock()
        result.deleted_count = len(self._data) - len(kept)
        self._data = kept
        return result

    async def create_index(self, keys, unique=False, partialFilterExpression=None, name=None, **kwargs):
        fields = [keys] if isinstance(keys, str) else [k for k, _ in keys]
        if unique:
            self._indexes.append((fields, partialFilterExpression or {}))
        return name or "_".join(fields)

    # helpers

    def _check_unique(self, candidate, skip=None):
        for index, doc in enumerate(self._data):
            if index == skip:
                continue
            if doc.get("_id") == candidate.get("_id"):
                raise DuplicateKeyError(f"duplicate _id {candidate.get('_id')}")
            for fields, partial in self._indexes:
                if partial and not (self._matches(doc, partial) and self._matches(candidate, partial)):
                    continue
                if all(_lookup(doc, f)[1] == _lookup(candidate, f)[1] for f in fields):
                    raise DuplicateKeyError(f"duplicate key on {fields}")

    def _upsert_doc(self, query, update):
        base = {}
        for key, value in query.items():
            if not key.startswith("$") and not isinstance(value, dict):
                _assign(base, key, value)
        return self._apply(base, update, inserting=True)

    def _apply(self, doc, update, inserting=False):
        new = copy.deepcopy(doc)
        for key, value in update.get("$set", {}).items():
            _assign(new, key, copy.deepcopy(value))
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                _assign(new, key, copy.deepcopy(value))
        for key in update.get("$unset", {}):
            _remove(new, key)
        for key, amount in update.get("$inc", {}).items():
            _assign(new, key, (_lookup(new, key)[1] or 0) + amount)
        for key, value in update.get("$max", {}).items():
            present, current = _lookup(new, key)
            if not present or current is None or value > current:
                _assign(new, key, value)
        for key, value in update.get("$push", {}).items():
            items = list(_lookup(new, key)[1] or [])
            if isinstance(value, dict) and "$each" in value:
                items.extend(copy.deepcopy(value["$each"]))
                if "$slice" in value:
                    n = value["$slice"]
                    items = items[n:] if n < 0 else items[:n]
            else:
                items.append(copy.deepcopy(value))
            _assign(new, key, items)
        for key, value in update.get("$addToSet", {}).items():
            items = list(_lookup(new, key)[1] or [])
            for item in value["$each"] if isinstance(value, dict) and "$each" in value else [value]:
                if item not in items:
                    items.append(item)
            _assign(new, key, items)
        for key, direction in update.get("$pop", {}).items():
            items = list(_lookup(new, key)[1] or [])
            if items:
                items = items[1:] if direction == -1 else items[:-1]
            _assign(new, key, items)
        return new

    def _matches(self, doc, query):
        """mongodb query matching for the operators the services use"""
        for key, value in query.items():
            if key == "$or":
                if not any(self._matches(doc, cond) for cond in value):
                    return False
                continue
            if key == "$and":
                if not all(self._matches(doc, cond) for cond in value):
                    return False
                continue
            present, doc_val = _lookup(doc, key)
            if isinstance(value, dict) and value and all(k.startswith("$") for k in value):
                if not all(self._operator(op, arg, present, doc_val) for op, arg in value.items()):
                    return False
            elif not self._equals(doc_val, value):
                return False
        return True

    @staticmethod
    def _equals(doc_val, value):
        if isinstance(doc_val, list) and not isinstance(value, list):
            return value in doc_val
        return doc_val == value

    def _operator(self, op, arg, present, doc_val):
        if op == "$in":
            if isinstance(doc_val, list):
                return any(v in arg for v in doc_val)
            return doc_val in arg
        if op == "$nin":
            return not self._operator("$in", arg, present, doc_val)
        if op == "$ne":
            return not self._equals(doc_val, arg)
        if op == "$exists":
            return present == bool(arg)
        if op == "$type":
            return arg == "string" and isinstance(doc_val, str)
        if op == "$regex":
            return doc_val is not None and re.search(arg, str(doc_val)) is not None
        if doc_val is None:
            return False
        if op == "$gt":
            return doc_val > arg
        if op == "$gte":
            return doc_val >= arg
        if op == "$lt":
            return doc_val < arg
        if op == "$lte":
            return doc_val <= arg
        raise NotImplementedError(f"mock does not support {op}")


class MockDatabase:
    """mock database that mimics the Database class"""

    def __init__(self):
        self.users = MockCollection([
            THERAPIST_DOC,
            THERAPIST_2_DOC,
            PATIENT_DOC,
            PATIENT_2_DOC,
            MULTI_GROUP_PATIENT_DOC,
            UNGROUPED_PATIENT_DOC,
            ADMIN_DOC,
        ])
        self.groups = MockCollection(GROUP_DOCS)
        self.therapist_assignments = MockCollection(ASSIGNMENT_DOCS)
        self.conversations = MockCollection([])
        self.messages = MockCollection([])
        self.alerts = MockCollection([])
        self.tags = MockCollection([])
        self.notes = MockCollection([])
        self.drafts = MockCollection([])
        self.scheduled_jobs = MockCollection([])
        self.notification_batches = MockCollection([])
        self.transactions = MockCollection([])
        self.tool_conversations = MockCollection([])
        self.tool_messages = MockCollection([])
        self.counters = MockCollection([])

    async def connect(self):
        pass

    async def close(self):
        pass


@pytest_asyncio.fixture
async def mock_db():
    """fresh mock database with the production indexes for each test"""
    database = MockDatabase()
    await ensure_indexes(database)
    return database


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def test_settings():
    """settings copy with every feature on and moderation off"""
    return Settings().model_copy(update={
        "ENABLE_AI": True,
        "ENABLE_DANGER_DETECTION": True,
        "ENABLE_TAGGING": True,
        "ENABLE_DRAFTS": True,
        "AUTO_START": False,
        "MODERATION_ENABLED": False,
        "DEFAULT_MODE": "ai_hybrid",
        "DANGER_NOTIFICATION_EMAILS": "crisis-team@therapychat.com",
    })


@pytest.fixture
def services(mock_db, fake_gateway, test_settings):
    """the full service bundle over the mock database"""
    return build_services(mock_db, fake_gateway, test_settings)


# each test client carries its own user in a header, so a test can hold
# several clients at once without the last fixture deciding the caller
TEST_USER_HEADER = "X-Test-User"
TEST_USERS = {u["id"]: u for u in (THERAPIST, THERAPIST_2, PATIENT, PATIENT_2, MULTI_GROUP_PATIENT, UNGROUPED_PATIENT, ADMIN)}


async def override_get_current_user(request: Request) -> dict:
    user = TEST_USERS.get(request.headers.get(TEST_USER_HEADER, ""))
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return copy.deepcopy(user)


def _override(mock_db, services, user=None):
    async def override_get_db():
        return mock_db

    async def override_get_services():
        return services

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ai_gateway] = lambda: services.chat.gateway
    app.dependency_overrides[get_services] = override_get_services
    if user is not None:
        app.dependency_overrides[get_current_user] = override_get_current_user


async def _client_as(mock_db, services, user=None):
    _override(mock_db, services, user)
    transport = ASGITransport(app=app)
    headers = {TEST_USER_HEADER: user["id"]} if user is not None else {}
    return AsyncClient(transport=transport, base_url="http://test", headers=headers)


@pytest_asyncio.fixture
async def client(mock_db, services):
    """httpx async test client, no user override (real bearer token auth)"""
    async with await _client_as(mock_db, services) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def therapist_client(mock_db, services):
    """client authenticated as dr. chen (both groups)"""
    async with await _client_as(mock_db, services, THERAPIST) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def therapist_2_client(mock_db, services):
    """client authenticated as dr. haddad (mood-recovery only)"""
    async with await _client_as(mock_db, services, THERAPIST_2) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def patient_client(mock_db, services):
    """client authenticated as alex rivera (anxiety-support)"""
    async with await _client_as(mock_db, services, PATIENT) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_client(mock_db, services):
    async with await _client_as(mock_db, services, ADMIN) as ac:
        yield ac
    app.dependency_overrides.clear()
