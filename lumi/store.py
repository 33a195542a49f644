"""Data-access capabilities injected into the services.

The MongoDB implementations live in lumi.db; tests substitute in-memory fakes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Iterable, Optional

from lumi.models import (
    Achievement,
    AuditLogEntry,
    ClassStats,
    LinkCode,
    ReadingLog,
    School,
    Student,
    StudentStats,
    User,
    ValidationStatus,
)


class DuplicateLinkCodeError(Exception):
    """Another active link code already holds this value."""


class AuditSink(ABC):
    @abstractmethod
    async def record(self, entry: AuditLogEntry) -> None:
        """Append one entry; entries are never updated or removed."""


class StoreTransaction(ABC):
    """Reads and writes that commit together or not at all."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def get_student(self, school_id: str, student_id: str) -> Optional[Student]: ...

    @abstractmethod
    async def set_linked_children(self, user_id: str, student_ids: list[str]) -> None: ...

    @abstractmethod
    async def set_parent_ids(self, school_id: str, student_id: str, parent_ids: list[str]) -> None: ...

    @abstractmethod
    async def append_audit(self, entry: AuditLogEntry) -> None: ...


class Store(ABC):
    # Students
    @abstractmethod
    async def get_student(self, school_id: str, student_id: str) -> Optional[Student]: ...

    @abstractmethod
    async def list_students(self, school_id: str, class_id: Optional[str] = None) -> list[Student]: ...

    @abstractmethod
    async def update_student_stats(self, school_id: str, student_id: str, stats: StudentStats) -> bool:
        """Replace the whole stats sub-document. False if the student is gone."""

    @abstractmethod
    async def append_achievements(
        self, school_id: str, student_id: str, achievements: list[Achievement]
    ) -> list[Achievement]:
        """Append achievements whose id is not already present; return those appended."""

    # Users
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def add_fcm_token(self, user_id: str, token: str) -> None: ...

    # Classes and schools
    @abstractmethod
    async def update_class_stats(self, school_id: str, class_id: str, stats: ClassStats) -> bool: ...

    @abstractmethod
    async def list_schools(self) -> list[School]: ...

    # Reading logs
    @abstractmethod
    async def list_reading_logs(
        self,
        school_id: str,
        student_ids: Iterable[str],
        statuses: Optional[Iterable[str]] = None,
    ) -> list[ReadingLog]: ...

    @abstractmethod
    async def has_reading_log_since(self, school_id: str, student_id: str, since: datetime) -> bool: ...

    @abstractmethod
    async def set_log_validation(
        self,
        school_id: str,
        log_id: str,
        status: ValidationStatus,
        errors: list[str],
        validated_at: Optional[datetime] = None,
    ) -> None: ...

    # Link codes
    @abstractmethod
    async def find_link_code(self, code: str) -> Optional[LinkCode]:
        """Exact match regardless of status."""

    @abstractmethod
    async def active_link_code_exists(self, code: str) -> bool: ...

    @abstractmethod
    async def insert_link_code(self, link_code: LinkCode) -> LinkCode:
        """Raises DuplicateLinkCodeError if an active code already has the value."""

    @abstractmethod
    async def expire_link_codes(self, now: datetime) -> int:
        """Mark active codes past expires_at as expired; return how many."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreTransaction]: ...
