"""Append-only audit trail entries."""
from datetime import datetime
from typing import Optional

from pydantic import Field

from lumi.models.base import Record, utcnow

CODE_VERIFICATION_FAILED = "code_verification_failed"
CODE_VERIFICATION_SUCCESS = "code_verification_success"
PARENT_SELF_UNLINK = "parent_self_unlink"


class AuditLogEntry(Record):
    type: str
    code: Optional[str] = None
    code_id: Optional[str] = None
    reason: Optional[str] = None
    ip: Optional[str] = None
    student_id: Optional[str] = None
    school_id: Optional[str] = None
    parent_user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
