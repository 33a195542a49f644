import os

os.environ.setdefault("DEBUG", "true")
os.environ["READING_TIMEZONE"] = "UTC"
os.environ["FIREBASE_CREDENTIALS_PATH"] = ""

from datetime import datetime, timezone

import pytest

from lumi.models import Student, User, UserRole
from lumi.services.rate_limit import InProcessRateLimiter
from tests.fakes import FrozenClock, InMemoryStore, MemoryAuditSink, RecordingDispatcher

SCHOOL_ID = "school-1"
NOW = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def audit(store):
    return MemoryAuditSink(store)


@pytest.fixture
def rate_limiter(clock):
    return InProcessRateLimiter(max_attempts=10, window_seconds=60, clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def parent(store):
    return store.add_user(
        User(
            id="parent-1",
            school_id=SCHOOL_ID,
            role=UserRole.PARENT,
            first_name="Pat",
            last_name="Reader",
            linked_children=["student-1"],
            fcm_tokens=["token-pat"],
        )
    )


@pytest.fixture
def teacher(store):
    return store.add_user(
        User(id="teacher-1", school_id=SCHOOL_ID, role=UserRole.TEACHER, first_name="Terry", last_name="Teach")
    )


@pytest.fixture
def student(store, parent):
    return store.add_student(
        Student(
            id="student-1",
            school_id=SCHOOL_ID,
            first_name="Sam",
            last_name="Reader",
            class_id="class-1",
            parent_ids=[parent.id],
        )
    )
