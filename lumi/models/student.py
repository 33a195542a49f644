"""Student record with its derived reading statistics and achievements."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from lumi.models.base import Record


class StudentStats(BaseModel):
    """Derived from the full log set; only the stats aggregator writes it."""

    total_minutes_read: int = 0
    total_books_read: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_reading_date: Optional[datetime] = None
    average_minutes_per_day: float = 0.0
    total_reading_days: int = 0
    last_updated: Optional[datetime] = None


class Achievement(BaseModel):
    id: str
    name: str
    description: str
    icon: str
    earned_at: Optional[datetime] = None


class Student(Record):
    school_id: str
    first_name: str = ""
    last_name: str = ""
    class_id: Optional[str] = None
    parent_ids: list[str] = Field(default_factory=list)

    stats: Optional[StudentStats] = None
    achievements: list[Achievement] = Field(default_factory=list)

    @field_validator("parent_ids", "achievements", mode="before")
    @classmethod
    def _missing_list_is_empty(cls, value):
        return [] if value is None else value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def achievement_ids(self) -> set[str]:
        return {a.id for a in self.achievements}
