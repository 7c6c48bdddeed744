"""
Pytest configuration and fixtures for quiz engine tests.
"""
import copy
import sys
import os
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from redis.exceptions import ConnectionError as RedisConnectionError

from core.exceptions import DocumentNotFoundError, StoreError
from schemas.user import Principal, Role
from services.autosave_service import AutosaveService
from services.document_store import QUIZZES, DocumentStore, StoredDocument, filter_matches
from services.session_service import QuizSession

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store. `fail_reads` fails that many upcoming reads; `fail_writes` fails every write."""

    def __init__(self):
        self.collections = defaultdict(dict)
        self.fail_reads = 0
        self.fail_writes = False
        self.reads = 0

    def put(self, collection, document_id, data):
        self.collections[collection][document_id] = copy.deepcopy(data)

    def _read(self):
        self.reads += 1
        if self.fail_reads:
            self.fail_reads -= 1
            raise StoreError("store unavailable")

    async def get_document(self, collection, document_id):
        self._read()
        data = self.collections[collection].get(document_id)
        return copy.deepcopy(data) if data is not None else None

    async def query(self, collection, filters=()):
        self._read()
        return [
            StoredDocument(doc_id, copy.deepcopy(data))
            for doc_id, data in self.collections[collection].items()
            if filter_matches(data, filters)
        ]

    async def create_document(self, collection, data, document_id=None):
        if self.fail_writes:
            raise StoreError("store unavailable")
        document_id = document_id or uuid.uuid4().hex
        self.collections[collection].setdefault(document_id, copy.deepcopy(data))
        return document_id

    async def update_document(self, collection, document_id, patch):
        if self.fail_writes:
            raise StoreError("store unavailable")
        if document_id not in self.collections[collection]:
            raise DocumentNotFoundError(collection, document_id)
        self.collections[collection][document_id].update(copy.deepcopy(patch))


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttl = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.ttl[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def autosave(redis, clock):
    return AutosaveService(redis, clock=clock)


@pytest.fixture
def student():
    return Principal(user_id="s1", role=Role.STUDENT, display_name="Student One")


@pytest.fixture
def teacher():
    return Principal(user_id="t1", role=Role.TEACHER, display_name="Teacher One")


@pytest.fixture
def admin():
    return Principal(user_id="a1", role=Role.ADMIN)


@pytest.fixture
def sample_questions():
    """Five auto-graded questions, one of each common kind"""
    return [
        {"id": "q1", "kind": "single-choice", "text": "2 + 2 = ?", "options": ["3", "4", "5"], "correctIndices": [1]},
        {"id": "q2", "kind": "multi-choice", "text": "Pick the primes", "options": ["2", "4", "5", "9"], "correctIndices": [0, 2]},
        {"id": "q3", "kind": "true-false", "text": "The sky is blue", "correctIndices": [0]},
        {"id": "q4", "kind": "fill-blank", "text": "The capital of France is ___", "blanks": ["Paris"]},
        {"id": "q5", "kind": "ordering", "text": "Order by size", "items": ["ant", "cat", "horse"]},
    ]


@pytest.fixture
def correct_answers():
    return {"q1": 1, "q2": [0, 2], "q3": 0, "q4": ["Paris"], "q5": [0, 1, 2]}


@pytest.fixture
def quiz_document(sample_questions):
    return {
        "title": "General knowledge",
        "courseId": "c1",
        "courseName": "Basics",
        "teacherId": "t1",
        "questions": sample_questions,
        "timeLimitSeconds": 600,
        "isPublished": True,
        "enrolledStudentIds": ["s1"],
    }


@pytest.fixture
def seeded_store(store, quiz_document):
    store.put(QUIZZES, "quiz1", quiz_document)
    return store


@pytest.fixture
async def make_session(seeded_store, autosave, clock, sleep, student):
    created = []

    def factory(principal=None, listener=None):
        session = QuizSession(
            principal or student,
            store=seeded_store,
            autosave=autosave,
            clock=clock,
            sleep=sleep,
            listener=listener,
            start_timers=False,
        )
        created.append(session)
        return session

    yield factory
    for session in created:
        await session.close()
