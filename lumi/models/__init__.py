"""Pydantic records persisted in MongoDB."""
from lumi.models.base import Record, new_id, utcnow
from lumi.models.reading_log import COUNTED_STATUSES, ReadingLog, ValidationStatus
from lumi.models.student import Achievement, Student, StudentStats
from lumi.models.user import MAX_FCM_TOKENS, STAFF_ROLES, User, UserRole
from lumi.models.school_class import ClassStats, SchoolClass
from lumi.models.school import QuietHours, School
from lumi.models.link_code import (
    BulkLinkCodeOut,
    LinkCode,
    LinkCodeOut,
    LinkCodeStatus,
    LinkCodeType,
    StudentLinkInfo,
)
from lumi.models.audit import AuditLogEntry
from lumi.models.rate_limit import RateLimitCounter

__all__ = [
    "Record",
    "new_id",
    "utcnow",
    "COUNTED_STATUSES",
    "ReadingLog",
    "ValidationStatus",
    "Achievement",
    "Student",
    "StudentStats",
    "MAX_FCM_TOKENS",
    "STAFF_ROLES",
    "User",
    "UserRole",
    "ClassStats",
    "SchoolClass",
    "QuietHours",
    "School",
    "BulkLinkCodeOut",
    "LinkCode",
    "LinkCodeOut",
    "LinkCodeStatus",
    "LinkCodeType",
    "StudentLinkInfo",
    "AuditLogEntry",
    "RateLimitCounter",
]
