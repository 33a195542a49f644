"""MongoDB implementations.

The watcher tests use a scripted stand-in for the change stream. The store
and rate limiter tests need a running server (MONGODB_TEST_URL, default
localhost) and are skipped without one; transactions also need a replica set.
"""
import os
import uuid
from datetime import timedelta

import pytest
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import AutoReconnect, OperationFailure, PyMongoError

from lumi import db
from lumi.db import MongoAuditSink, MongoRateLimiter, MongoStore, ensure_indexes, watch_changes
from lumi.errors import FailedPrecondition
from lumi.models import Achievement, AuditLogEntry, LinkCode, Student, StudentStats, User, UserRole
from lumi.services.linking import UnlinkTransaction
from lumi.store import DuplicateLinkCodeError
from tests.conftest import NOW, SCHOOL_ID

MONGODB_TEST_URL = os.environ.get("MONGODB_TEST_URL", "mongodb://localhost:27017")


def log_change(token: str, log_id: str) -> dict:
    return {
        "_id": {"_data": token},
        "ns": {"db": "lumi", "coll": "reading_logs"},
        "operationType": "insert",
        "documentKey": {"_id": log_id},
        "fullDocument": {"_id": log_id, "school_id": SCHOOL_ID, "student_id": "student-1"},
    }


class ScriptedStream:
    """Yields the given changes, then raises `error` (or ends)."""

    def __init__(self, changes, error=None):
        self.changes = list(changes)
        self.error = error
        self.resume_token = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.changes:
            change = self.changes.pop(0)
            self.resume_token = change["_id"]
            return change
        if self.error:
            raise self.error
        raise StopAsyncIteration


class ScriptedDatabase:
    def __init__(self, *streams):
        self.streams = list(streams)
        self.resume_points = []

    async def command(self, command):
        return {"ok": 1}

    def watch(self, pipeline, **kwargs):
        self.resume_points.append(kwargs.get("resume_after"))
        stream = self.streams.pop(0)
        if isinstance(stream, Exception):
            raise stream
        return stream


class RecordingRouter:
    def __init__(self):
        self.document_ids = []

    async def dispatch(self, event):
        self.document_ids.append(event.document_id)


@pytest.fixture
def sleeps(monkeypatch):
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(db.asyncio, "sleep", sleep)
    return delays


STANDALONE = OperationFailure("The $changeStream stage is only supported on replica sets", code=40573)


class TestWatchChanges:
    async def test_reopens_after_last_handled_event(self, sleeps):
        database = ScriptedDatabase(
            ScriptedStream([log_change("t1", "log-1")], error=AutoReconnect("primary stepped down")),
            ScriptedStream([log_change("t2", "log-2")], error=OperationFailure("history lost", code=286)),
            STANDALONE,
        )
        router = RecordingRouter()

        await watch_changes(database, router, max_attempts=1)

        assert router.document_ids == ["log-1", "log-2"]
        # Resume after t1; once the resume point is gone, start from now.
        assert database.resume_points == [None, {"_data": "t1"}, None]
        assert len(sleeps) == 2

    async def test_backs_off_while_the_server_is_away(self, sleeps):
        down = [AutoReconnect("connection refused") for _ in range(4)]
        database = ScriptedDatabase(*down, STANDALONE)

        await watch_changes(database, RecordingRouter(), retry_delay=1.0, max_retry_delay=4.0)

        assert sleeps == [1.0, 2.0, 4.0, 4.0]

    async def test_standalone_server_stops_the_watcher(self, sleeps):
        database = ScriptedDatabase(STANDALONE)

        await watch_changes(database, RecordingRouter())

        assert sleeps == []


@pytest.fixture
async def mongo_client():
    client = AsyncIOMotorClient(MONGODB_TEST_URL, tz_aware=True, serverSelectionTimeoutMS=1000)
    try:
        await client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip(f"MongoDB not reachable at {MONGODB_TEST_URL}")
    yield client
    client.close()


@pytest.fixture
async def database(mongo_client):
    database = mongo_client[f"lumi_test_{uuid.uuid4().hex[:12]}"]
    await ensure_indexes(database)
    yield database
    await mongo_client.drop_database(database.name)


@pytest.fixture
async def replica_set(mongo_client):
    hello = await mongo_client.admin.command("hello")
    if "setName" not in hello:
        pytest.skip("transactions need a replica set")


@pytest.fixture
def mongo_store(database):
    return MongoStore(database)


class TestMongoRateLimiter:
    async def test_fixed_window(self, database, clock):
        limiter = MongoRateLimiter(database, max_attempts=10, window_seconds=60, clock=clock)

        assert [await limiter.hit("verify_attempt_a") for _ in range(11)] == [True] * 10 + [False]

        counter = await database.rate_limits.find_one({"_id": "verify_attempt_a"})
        assert counter["attempts"] == 10
        assert counter["last_attempt"] == NOW

        clock.advance(seconds=30)
        # Rejected attempts do not extend the window.
        assert not await limiter.hit("verify_attempt_a")
        counter = await database.rate_limits.find_one({"_id": "verify_attempt_a"})
        assert (counter["attempts"], counter["last_attempt"]) == (10, NOW)

        clock.advance(seconds=31)
        assert await limiter.hit("verify_attempt_a")
        counter = await database.rate_limits.find_one({"_id": "verify_attempt_a"})
        assert counter["attempts"] == 1

    async def test_keys_are_independent(self, database, clock):
        limiter = MongoRateLimiter(database, max_attempts=1, window_seconds=60, clock=clock)

        assert await limiter.hit("verify_attempt_a")
        assert not await limiter.hit("verify_attempt_a")
        assert await limiter.hit("verify_attempt_b")


class TestMongoStore:
    async def test_find_link_code_prefers_active(self, mongo_store):
        await mongo_store.insert_link_code(
            LinkCode(code="AB12CD34", school_id=SCHOOL_ID, status="active", created_at=NOW - timedelta(days=400))
        )
        await mongo_store.insert_link_code(LinkCode(code="AB12CD34", school_id=SCHOOL_ID, status="used", created_at=NOW))

        found = await mongo_store.find_link_code("AB12CD34")

        assert found.status == "active"

    async def test_find_link_code_falls_back_to_newest(self, mongo_store):
        await mongo_store.insert_link_code(
            LinkCode(code="AB12CD34", school_id=SCHOOL_ID, status="used", created_at=NOW - timedelta(days=400))
        )
        newest = await mongo_store.insert_link_code(
            LinkCode(code="AB12CD34", school_id=SCHOOL_ID, status="revoked", created_at=NOW)
        )

        assert (await mongo_store.find_link_code("AB12CD34")).id == newest.id
        assert await mongo_store.find_link_code("ZZZZZZZZ") is None

    async def test_active_codes_are_unique(self, mongo_store):
        await mongo_store.insert_link_code(LinkCode(code="AB12CD34", school_id=SCHOOL_ID))

        with pytest.raises(DuplicateLinkCodeError):
            await mongo_store.insert_link_code(LinkCode(code="AB12CD34", school_id=SCHOOL_ID))

        # Inactive codes may share the value.
        await mongo_store.insert_link_code(LinkCode(code="AB12CD34", school_id=SCHOOL_ID, status="used"))
        assert await mongo_store.active_link_code_exists("AB12CD34")

    async def test_append_achievements_is_idempotent(self, database, mongo_store):
        await database.students.insert_one(Student(id="student-1", school_id=SCHOOL_ID).to_mongo())
        award = Achievement(id="week_streak", name="Week Warrior", description="Read for 7 days in a row!", icon="🔥", earned_at=NOW)

        first = await mongo_store.append_achievements(SCHOOL_ID, "student-1", [award])
        again = await mongo_store.append_achievements(SCHOOL_ID, "student-1", [award])

        assert [a.id for a in first] == ["week_streak"]
        assert again == []
        student = await mongo_store.get_student(SCHOOL_ID, "student-1")
        assert [a.id for a in student.achievements] == ["week_streak"]

    async def test_stats_for_missing_student_are_not_written(self, mongo_store):
        assert not await mongo_store.update_student_stats(SCHOOL_ID, "ghost", StudentStats(total_minutes_read=5))

    async def test_expire_link_codes(self, mongo_store):
        await mongo_store.insert_link_code(
            LinkCode(code="AAAAAAAA", school_id=SCHOOL_ID, expires_at=NOW - timedelta(days=1))
        )
        await mongo_store.insert_link_code(
            LinkCode(code="BBBBBBBB", school_id=SCHOOL_ID, expires_at=NOW + timedelta(days=1))
        )

        assert await mongo_store.expire_link_codes(NOW) == 1

        expired = await mongo_store.find_link_code("AAAAAAAA")
        assert (expired.status, expired.expired_at) == ("expired", NOW)
        assert (await mongo_store.find_link_code("BBBBBBBB")).status == "active"

    async def test_fcm_tokens_keep_newest_five(self, database, mongo_store):
        await database.users.insert_one(User(id="parent-1", school_id=SCHOOL_ID, role=UserRole.PARENT).to_mongo())

        for token in ["t0", "t1", "t0", "t2", "t3", "t4", "t5"]:
            await mongo_store.add_fcm_token("parent-1", token)

        assert (await mongo_store.get_user("parent-1")).fcm_tokens == ["t1", "t2", "t3", "t4", "t5"]


@pytest.fixture
async def linked_family(database):
    await database.users.insert_one(
        User(id="parent-1", school_id=SCHOOL_ID, role=UserRole.PARENT, linked_children=["student-1"]).to_mongo()
    )
    await database.students.insert_one(
        Student(id="student-1", school_id=SCHOOL_ID, parent_ids=["parent-1"]).to_mongo()
    )


class TestMongoTransaction:
    async def test_unlink_commits_both_sides_and_audit(self, replica_set, database, mongo_store, linked_family, clock):
        await UnlinkTransaction(mongo_store, clock=clock).unlink("parent-1", "student-1", SCHOOL_ID)

        assert (await mongo_store.get_user("parent-1")).linked_children == []
        assert (await mongo_store.get_student(SCHOOL_ID, "student-1")).parent_ids == []
        entries = await database.audit_logs.find({"type": "parent_self_unlink"}).to_list(None)
        assert len(entries) == 1

    async def test_failure_rolls_back(self, replica_set, database, mongo_store, linked_family):
        with pytest.raises(RuntimeError):
            async with mongo_store.transaction() as tx:
                await tx.set_parent_ids(SCHOOL_ID, "student-1", [])
                await tx.set_linked_children("parent-1", [])
                raise RuntimeError("abort")

        assert (await mongo_store.get_user("parent-1")).linked_children == ["student-1"]
        assert (await mongo_store.get_student(SCHOOL_ID, "student-1")).parent_ids == ["parent-1"]

    async def test_not_linked_writes_nothing(self, replica_set, database, mongo_store, linked_family, clock):
        unlink = UnlinkTransaction(mongo_store, clock=clock)
        await unlink.unlink("parent-1", "student-1", SCHOOL_ID)

        with pytest.raises(FailedPrecondition):
            await unlink.unlink("parent-1", "student-1", SCHOOL_ID)

        assert await database.audit_logs.count_documents({}) == 1


async def test_audit_sink_appends(database):
    await MongoAuditSink(database).record(AuditLogEntry(type="code_verification_failed", code="AB12CD34", timestamp=NOW))

    assert await database.audit_logs.count_documents({"code": "AB12CD34"}) == 1
