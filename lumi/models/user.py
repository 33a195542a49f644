"""School staff and parent accounts."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from lumi.models.base import Record, utcnow

MAX_FCM_TOKENS = 5


class UserRole(str, Enum):
    SCHOOL_ADMIN = "schoolAdmin"
    TEACHER = "teacher"
    PARENT = "parent"


STAFF_ROLES = (UserRole.SCHOOL_ADMIN, UserRole.TEACHER)


class User(Record):
    school_id: str
    role: UserRole
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    # Parent-specific: linked student IDs
    linked_children: list[str] = Field(default_factory=list)

    # FCM tokens for notifications
    fcm_tokens: list[str] = Field(default_factory=list)

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
