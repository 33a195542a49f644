"""One reading session for a student on a given day."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator

from lumi.models.base import Record, utcnow

# Logs in any other status are ignored by the statistics.
COUNTED_STATUSES = ("completed", "partial")


class ValidationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"


class ReadingLog(Record):
    school_id: str
    student_id: Optional[str] = None
    parent_id: Optional[str] = None
    date: Optional[datetime] = None
    minutes_read: int = 0
    book_titles: list[str] = Field(default_factory=list)
    status: str = "completed"  # completed, partial, skipped, ...

    validation_status: Optional[ValidationStatus] = None
    validation_errors: list[str] = Field(default_factory=list)
    validated_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("minutes_read", mode="before")
    @classmethod
    def _missing_minutes_is_zero(cls, value):
        return 0 if value is None else value

    @field_validator("book_titles", "validation_errors", mode="before")
    @classmethod
    def _missing_list_is_empty(cls, value):
        return [] if value is None else value

    @property
    def is_counted(self) -> bool:
        return self.status in COUNTED_STATUSES

    @property
    def book_count(self) -> int:
        return len(self.book_titles)
