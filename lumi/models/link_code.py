"""Short-lived codes that let a parent link to one or more students."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from lumi.models.base import Record, utcnow


class LinkCodeType(str, Enum):
    SINGLE = "single"
    BULK = "bulk"


class LinkCodeStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"


class LinkCode(Record):
    code: str
    type: LinkCodeType = LinkCodeType.SINGLE
    student_id: Optional[str] = None
    student_ids: list[str] = Field(default_factory=list)
    school_id: str
    # Plain string so unknown statuses written by other tools still load.
    status: str = LinkCodeStatus.ACTIVE.value
    revoke_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_by: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class LinkCodeOut(BaseModel):
    """What a verifying client may see: no caller IP, no rate-limit state."""

    id: str
    code: str
    type: LinkCodeType
    student_id: Optional[str] = None
    student_ids: list[str] = []
    school_id: str
    status: str
    expires_at: Optional[datetime] = None
    metadata: dict[str, Any] = {}

    @classmethod
    def from_link_code(cls, link_code: LinkCode) -> "LinkCodeOut":
        return cls(
            id=link_code.id,
            code=link_code.code,
            type=link_code.type,
            student_id=link_code.student_id,
            student_ids=link_code.student_ids,
            school_id=link_code.school_id,
            status=link_code.status,
            expires_at=link_code.expires_at,
            metadata=link_code.metadata or {},
        )


class StudentLinkInfo(BaseModel):
    """Denormalized student names stored on bulk codes for display."""

    student_id: str
    first_name: str
    last_name: str
    full_name: str


class BulkLinkCodeOut(BaseModel):
    success: bool = True
    code_id: str
    code: str
    student_count: int
    students: list[StudentLinkInfo]
    expires_at: datetime
