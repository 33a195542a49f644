"""In-memory stand-ins for the injected capabilities."""
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Iterable, Optional

from lumi.models import (
    MAX_FCM_TOKENS,
    Achievement,
    AuditLogEntry,
    ClassStats,
    LinkCode,
    LinkCodeStatus,
    ReadingLog,
    School,
    SchoolClass,
    Student,
    StudentStats,
    User,
    ValidationStatus,
)
from lumi.services.fcm import NotificationDispatcher
from lumi.services.stats import as_utc
from lumi.store import AuditSink, DuplicateLinkCodeError, Store, StoreTransaction
from lumi.triggers import READING_LOGS, STUDENTS, ChangeEvent


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryTransaction(StoreTransaction):
    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.store.get_user(user_id)

    async def get_student(self, school_id: str, student_id: str) -> Optional[Student]:
        return await self.store.get_student(school_id, student_id)

    async def set_linked_children(self, user_id: str, student_ids: list[str]) -> None:
        self.store._maybe_fail("set_linked_children")
        self.store.users[user_id].linked_children = list(student_ids)

    async def set_parent_ids(self, school_id: str, student_id: str, parent_ids: list[str]) -> None:
        self.store._maybe_fail("set_parent_ids")
        self.store.students[student_id].parent_ids = list(parent_ids)

    async def append_audit(self, entry: AuditLogEntry) -> None:
        self.store._maybe_fail("append_audit")
        self.store.audit_logs.append(entry)


class InMemoryStore(Store):
    """Dict-backed store that records calls and emits change events."""

    def __init__(self):
        self.students: dict[str, Student] = {}
        self.users: dict[str, User] = {}
        self.classes: dict[str, SchoolClass] = {}
        self.schools: dict[str, School] = {}
        self.logs: dict[str, ReadingLog] = {}
        self.link_codes: list[LinkCode] = []
        self.audit_logs: list[AuditLogEntry] = []
        self.events: list[ChangeEvent] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise RuntimeError(f"simulated failure in {operation}")

    def _emit(self, collection: str, operation: str, document_id: str, before, after) -> None:
        self.events.append(
            ChangeEvent(
                collection=collection,
                operation=operation,
                document_id=document_id,
                before=before.to_mongo() if before else None,
                after=after.to_mongo() if after else None,
            )
        )

    # Seeding helpers (act like client writes)
    def add_student(self, student: Student) -> Student:
        self.students[student.id] = student
        return student

    def add_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    def add_class(self, school_class: SchoolClass) -> SchoolClass:
        self.classes[school_class.id] = school_class
        return school_class

    def add_school(self, school: School) -> School:
        self.schools[school.id] = school
        return school

    def add_link_code(self, link_code: LinkCode) -> LinkCode:
        self.link_codes.append(link_code)
        return link_code

    def write_log(self, log: ReadingLog) -> ReadingLog:
        before = self.logs.get(log.id)
        self.logs[log.id] = log
        self._emit(READING_LOGS, "update" if before else "insert", log.id, before, log)
        return log

    def delete_log(self, log_id: str) -> None:
        before = self.logs.pop(log_id)
        self._emit(READING_LOGS, "delete", log_id, before, None)

    def drain_events(self) -> list[ChangeEvent]:
        events, self.events = self.events, []
        return events

    # Students
    async def get_student(self, school_id: str, student_id: str) -> Optional[Student]:
        self._maybe_fail("get_student")
        student = self.students.get(student_id)
        if not student or student.school_id != school_id:
            return None
        return student.model_copy(deep=True)

    async def list_students(self, school_id: str, class_id: Optional[str] = None) -> list[Student]:
        self._maybe_fail("list_students")
        return [
            s.model_copy(deep=True)
            for s in self.students.values()
            if s.school_id == school_id and (class_id is None or s.class_id == class_id)
        ]

    async def update_student_stats(self, school_id: str, student_id: str, stats: StudentStats) -> bool:
        self._maybe_fail("update_student_stats")
        student = self.students.get(student_id)
        if not student or student.school_id != school_id:
            return False
        before = student.model_copy(deep=True)
        student.stats = stats.model_copy(deep=True)
        self._emit(STUDENTS, "update", student_id, before, student)
        return True

    async def append_achievements(
        self, school_id: str, student_id: str, achievements: list[Achievement]
    ) -> list[Achievement]:
        self._maybe_fail("append_achievements")
        student = self.students.get(student_id)
        if not student or student.school_id != school_id:
            return []
        before = student.model_copy(deep=True)
        appended = []
        for achievement in achievements:
            if achievement.id not in student.achievement_ids():
                student.achievements.append(achievement)
                appended.append(achievement)
        if appended:
            self._emit(STUDENTS, "update", student_id, before, student)
        return appended

    # Users
    async def get_user(self, user_id: str) -> Optional[User]:
        self._maybe_fail("get_user")
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def add_fcm_token(self, user_id: str, token: str) -> None:
        self._maybe_fail("add_fcm_token")
        user = self.users[user_id]
        if token not in user.fcm_tokens:
            user.fcm_tokens = (user.fcm_tokens + [token])[-MAX_FCM_TOKENS:]

    # Classes and schools
    async def update_class_stats(self, school_id: str, class_id: str, stats: ClassStats) -> bool:
        self._maybe_fail("update_class_stats")
        school_class = self.classes.get(class_id)
        if not school_class or school_class.school_id != school_id:
            return False
        school_class.stats = stats.model_copy(deep=True)
        return True

    async def list_schools(self) -> list[School]:
        self._maybe_fail("list_schools")
        return [s.model_copy(deep=True) for s in self.schools.values()]

    # Reading logs
    async def list_reading_logs(
        self,
        school_id: str,
        student_ids: Iterable[str],
        statuses: Optional[Iterable[str]] = None,
    ) -> list[ReadingLog]:
        self._maybe_fail("list_reading_logs")
        student_ids = set(student_ids)
        statuses = set(statuses) if statuses is not None else None
        return [
            log.model_copy(deep=True)
            for log in self.logs.values()
            if log.school_id == school_id
            and log.student_id in student_ids
            and (statuses is None or log.status in statuses)
        ]

    async def has_reading_log_since(self, school_id: str, student_id: str, since: datetime) -> bool:
        self._maybe_fail("has_reading_log_since")
        return any(
            log.school_id == school_id
            and log.student_id == student_id
            and log.date is not None
            and as_utc(log.date) >= since
            for log in self.logs.values()
        )

    async def set_log_validation(
        self,
        school_id: str,
        log_id: str,
        status: ValidationStatus,
        errors: list[str],
        validated_at: Optional[datetime] = None,
    ) -> None:
        self._maybe_fail("set_log_validation")
        log = self.logs[log_id]
        before = log.model_copy(deep=True)
        log.validation_status = ValidationStatus(status).value
        log.validation_errors = list(errors)
        log.validated_at = validated_at
        self._emit(READING_LOGS, "update", log_id, before, log)

    # Link codes
    async def find_link_code(self, code: str) -> Optional[LinkCode]:
        self._maybe_fail("find_link_code")
        matches = [lc for lc in self.link_codes if lc.code == code]
        matches.sort(key=lambda lc: (lc.status != LinkCodeStatus.ACTIVE.value, -lc.created_at.timestamp()))
        return matches[0].model_copy(deep=True) if matches else None

    async def active_link_code_exists(self, code: str) -> bool:
        self._maybe_fail("active_link_code_exists")
        return any(lc.code == code and lc.status == LinkCodeStatus.ACTIVE.value for lc in self.link_codes)

    async def insert_link_code(self, link_code: LinkCode) -> LinkCode:
        self._maybe_fail("insert_link_code")
        if link_code.status == LinkCodeStatus.ACTIVE.value and any(
            lc.code == link_code.code and lc.status == LinkCodeStatus.ACTIVE.value for lc in self.link_codes
        ):
            raise DuplicateLinkCodeError(link_code.code)
        self.link_codes.append(link_code)
        return link_code

    async def expire_link_codes(self, now: datetime) -> int:
        self._maybe_fail("expire_link_codes")
        count = 0
        for lc in self.link_codes:
            if lc.status == LinkCodeStatus.ACTIVE.value and lc.expires_at and as_utc(lc.expires_at) < now:
                lc.status = LinkCodeStatus.EXPIRED.value
                lc.expired_at = now
                count += 1
        return count

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy((self.students, self.users, self.audit_logs))
        try:
            yield InMemoryTransaction(self)
        except BaseException:
            self.students, self.users, self.audit_logs = snapshot
            raise


class MemoryAuditSink(AuditSink):
    """Appends to the store's audit list so tests see one trail."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def record(self, entry: AuditLogEntry) -> None:
        self.store._maybe_fail("record_audit")
        self.store.audit_logs.append(entry)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, failing_tokens: Iterable[str] = ()):
        self.sent: list[dict] = []
        self.failing_tokens = set(failing_tokens)

    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> None:
        if token in self.failing_tokens:
            raise RuntimeError(f"token {token} unregistered")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
