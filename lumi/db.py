"""MongoDB connection and the Mongo-backed store, audit sink and rate limiter."""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from lumi.config import settings
from lumi.models import (
    MAX_FCM_TOKENS,
    Achievement,
    AuditLogEntry,
    ClassStats,
    LinkCode,
    LinkCodeStatus,
    ReadingLog,
    School,
    Student,
    StudentStats,
    User,
    ValidationStatus,
    utcnow,
)
from lumi.models.base import Clock
from lumi.services.rate_limit import RateLimiter
from lumi.store import AuditSink, DuplicateLinkCodeError, Store, StoreTransaction
from lumi.triggers import READING_LOGS, STUDENTS, ChangeEvent, TriggerRouter, dispatch_with_retries

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Server error codes: change streams need a replica set; resume token aged out of the oplog.
_CHANGE_STREAMS_UNSUPPORTED = {40573}
_RESUME_POINT_LOST = {280, 286}


async def db_startup() -> AsyncIOMotorDatabase:
    """Connect to MongoDB and make sure indexes exist."""
    global _client
    _client = AsyncIOMotorClient(settings.mongodb_url, tz_aware=True)
    database = _client[settings.mongodb_db_name]
    await ensure_indexes(database)
    return database


async def db_shutdown():
    """Close MongoDB connection."""
    global _client
    if _client:
        _client.close()
        _client = None


async def ensure_indexes(database: AsyncIOMotorDatabase) -> None:
    await database.reading_logs.create_index([("school_id", ASCENDING), ("student_id", ASCENDING), ("status", ASCENDING)])
    await database.reading_logs.create_index([("school_id", ASCENDING), ("student_id", ASCENDING), ("date", DESCENDING)])
    await database.students.create_index([("school_id", ASCENDING), ("class_id", ASCENDING)])
    # A code value may be reused only once its previous holder left "active".
    await database.link_codes.create_index(
        "code",
        name="active_code_unique",
        unique=True,
        partialFilterExpression={"status": LinkCodeStatus.ACTIVE.value},
    )
    await database.link_codes.create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    await database.audit_logs.create_index([("type", ASCENDING), ("timestamp", DESCENDING)])


async def enable_pre_images(database: AsyncIOMotorDatabase) -> None:
    """Change events need before-images to compare old and new stats."""
    for name in (READING_LOGS, STUDENTS):
        try:
            await database.command({"collMod": name, "changeStreamPreAndPostImages": {"enabled": True}})
        except OperationFailure as e:
            logger.warning("Could not enable change stream pre-images on %s: %s", name, e)


def change_event_from_mongo(change: dict) -> ChangeEvent:
    return ChangeEvent(
        collection=change["ns"]["coll"],
        operation=change["operationType"],
        document_id=str(change["documentKey"]["_id"]),
        before=change.get("fullDocumentBeforeChange"),
        after=change.get("fullDocument"),
    )


async def watch_changes(
    database: AsyncIOMotorDatabase,
    router: TriggerRouter,
    max_attempts: int = settings.trigger_max_attempts,
    retry_delay: float = 1.0,
    max_retry_delay: float = 30.0,
) -> None:
    """Feed reading-log and student writes into the trigger router until cancelled.

    A dropped stream is reopened after the last event handled, backing off
    between attempts. Only a server that cannot serve change streams at all
    stops the watcher.
    """
    await enable_pre_images(database)
    pipeline = [
        {
            "$match": {
                "ns.coll": {"$in": [READING_LOGS, STUDENTS]},
                "operationType": {"$in": ["insert", "update", "replace", "delete"]},
            }
        }
    ]
    resume_token = None
    delay = retry_delay
    while True:
        try:
            async with database.watch(
                pipeline,
                full_document="updateLookup",
                full_document_before_change="whenAvailable",
                resume_after=resume_token,
            ) as stream:
                logger.info("Watching change streams on %s and %s", READING_LOGS, STUDENTS)
                delay = retry_delay
                async for change in stream:
                    await dispatch_with_retries(router, change_event_from_mongo(change), max_attempts)
                    resume_token = stream.resume_token
        except OperationFailure as e:
            if e.code in _CHANGE_STREAMS_UNSUPPORTED:
                logger.error("Change streams unavailable, triggers are not running: %s", e)
                return
            if e.code in _RESUME_POINT_LOST:
                logger.error("Change stream resume point lost, events since it are skipped: %s", e)
                resume_token = None
            else:
                logger.warning("Change stream failed, reopening in %.1fs: %s", delay, e)
        except PyMongoError as e:
            logger.warning("Change stream interrupted, reopening in %.1fs: %s", delay, e)
        await asyncio.sleep(delay)
        delay = min(delay * 2, max_retry_delay)


class MongoTransaction(StoreTransaction):
    def __init__(self, database: AsyncIOMotorDatabase, session: AsyncIOMotorClientSession):
        self.db = database
        self.session = session

    async def get_user(self, user_id: str) -> Optional[User]:
        return User.from_mongo(await self.db.users.find_one({"_id": user_id}, session=self.session))

    async def get_student(self, school_id: str, student_id: str) -> Optional[Student]:
        raw = await self.db.students.find_one({"_id": student_id, "school_id": school_id}, session=self.session)
        return Student.from_mongo(raw)

    async def set_linked_children(self, user_id: str, student_ids: list[str]) -> None:
        await self.db.users.update_one(
            {"_id": user_id}, {"$set": {"linked_children": student_ids}}, session=self.session
        )

    async def set_parent_ids(self, school_id: str, student_id: str, parent_ids: list[str]) -> None:
        await self.db.students.update_one(
            {"_id": student_id, "school_id": school_id},
            {"$set": {"parent_ids": parent_ids}},
            session=self.session,
        )

    async def append_audit(self, entry: AuditLogEntry) -> None:
        await self.db.audit_logs.insert_one(entry.to_mongo(), session=self.session)


class MongoStore(Store):
    def __init__(self, database: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None):
        self.db = database
        self.client = client or database.client

    # Students
    async def get_student(self, school_id: str, student_id: str) -> Optional[Student]:
        return Student.from_mongo(await self.db.students.find_one({"_id": student_id, "school_id": school_id}))

    async def list_students(self, school_id: str, class_id: Optional[str] = None) -> list[Student]:
        query = {"school_id": school_id}
        if class_id is not None:
            query["class_id"] = class_id
        return [Student.from_mongo(raw) async for raw in self.db.students.find(query)]

    async def update_student_stats(self, school_id: str, student_id: str, stats: StudentStats) -> bool:
        result = await self.db.students.update_one(
            {"_id": student_id, "school_id": school_id},
            {"$set": {"stats": stats.model_dump()}},
        )
        return result.matched_count > 0

    async def append_achievements(
        self, school_id: str, student_id: str, achievements: list[Achievement]
    ) -> list[Achievement]:
        appended: list[Achievement] = []
        for achievement in achievements:
            # The id filter makes each push a no-op if the id is already there.
            result = await self.db.students.update_one(
                {"_id": student_id, "school_id": school_id, "achievements.id": {"$ne": achievement.id}},
                {"$push": {"achievements": achievement.model_dump()}},
            )
            if result.modified_count:
                appended.append(achievement)
        return appended

    # Users
    async def get_user(self, user_id: str) -> Optional[User]:
        return User.from_mongo(await self.db.users.find_one({"_id": user_id}))

    async def add_fcm_token(self, user_id: str, token: str) -> None:
        await self.db.users.update_one(
            {"_id": user_id, "fcm_tokens": {"$ne": token}},
            {"$push": {"fcm_tokens": {"$each": [token], "$slice": -MAX_FCM_TOKENS}}},
        )

    # Classes and schools
    async def update_class_stats(self, school_id: str, class_id: str, stats: ClassStats) -> bool:
        result = await self.db.classes.update_one(
            {"_id": class_id, "school_id": school_id},
            {"$set": {"stats": stats.model_dump()}},
        )
        return result.matched_count > 0

    async def list_schools(self) -> list[School]:
        return [School.from_mongo(raw) async for raw in self.db.schools.find({})]

    # Reading logs
    async def list_reading_logs(
        self,
        school_id: str,
        student_ids: Iterable[str],
        statuses: Optional[Iterable[str]] = None,
    ) -> list[ReadingLog]:
        student_ids = list(student_ids)
        if not student_ids:
            return []
        query = {"school_id": school_id, "student_id": {"$in": student_ids}}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        return [ReadingLog.from_mongo(raw) async for raw in self.db.reading_logs.find(query)]

    async def has_reading_log_since(self, school_id: str, student_id: str, since: datetime) -> bool:
        raw = await self.db.reading_logs.find_one(
            {"school_id": school_id, "student_id": student_id, "date": {"$gte": since}},
            projection={"_id": 1},
        )
        return raw is not None

    async def set_log_validation(
        self,
        school_id: str,
        log_id: str,
        status: ValidationStatus,
        errors: list[str],
        validated_at: Optional[datetime] = None,
    ) -> None:
        await self.db.reading_logs.update_one(
            {"_id": log_id, "school_id": school_id},
            {
                "$set": {
                    "validation_status": ValidationStatus(status).value,
                    "validation_errors": errors,
                    "validated_at": validated_at,
                }
            },
        )

    # Link codes
    async def find_link_code(self, code: str) -> Optional[LinkCode]:
        raw = await self.db.link_codes.find_one({"code": code, "status": LinkCodeStatus.ACTIVE.value})
        if raw is None:
            raw = await self.db.link_codes.find_one({"code": code}, sort=[("created_at", DESCENDING)])
        return LinkCode.from_mongo(raw)

    async def active_link_code_exists(self, code: str) -> bool:
        raw = await self.db.link_codes.find_one(
            {"code": code, "status": LinkCodeStatus.ACTIVE.value}, projection={"_id": 1}
        )
        return raw is not None

    async def insert_link_code(self, link_code: LinkCode) -> LinkCode:
        try:
            await self.db.link_codes.insert_one(link_code.to_mongo())
        except DuplicateKeyError as e:
            raise DuplicateLinkCodeError(link_code.code) from e
        return link_code

    async def expire_link_codes(self, now: datetime) -> int:
        result = await self.db.link_codes.update_many(
            {"status": LinkCodeStatus.ACTIVE.value, "expires_at": {"$lt": now}},
            {"$set": {"status": LinkCodeStatus.EXPIRED.value, "expired_at": now}},
        )
        return result.modified_count

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MongoTransaction]:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield MongoTransaction(self.db, session)


class MongoAuditSink(AuditSink):
    def __init__(self, database: AsyncIOMotorDatabase):
        self.db = database

    async def record(self, entry: AuditLogEntry) -> None:
        await self.db.audit_logs.insert_one(entry.to_mongo())


class MongoRateLimiter(RateLimiter):
    """Counters in `rate_limits`, checked and bumped by one pipeline update."""

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        max_attempts: int = settings.verify_max_attempts,
        window_seconds: int = settings.verify_window_seconds,
        clock: Clock = utcnow,
    ):
        self.db = database
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock

    async def hit(self, key: str) -> bool:
        now = self.clock()
        # All expressions in one $set stage see the counter as it was before.
        recent = {"$gt": [{"$ifNull": ["$last_attempt", _EPOCH]}, now - self.window]}
        blocked = {"$and": [recent, {"$gte": [{"$ifNull": ["$attempts", 0]}, self.max_attempts]}]}
        counter = await self.db.rate_limits.find_one_and_update(
            {"_id": key},
            [
                {
                    "$set": {
                        "blocked": blocked,
                        "attempts": {
                            "$cond": [
                                blocked,
                                "$attempts",
                                {"$cond": [recent, {"$add": [{"$ifNull": ["$attempts", 0]}, 1]}, 1]},
                            ]
                        },
                        "last_attempt": {"$cond": [blocked, "$last_attempt", now]},
                    }
                }
            ],
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return not counter["blocked"]
