from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from lumi.models.base import Record


class ClassStats(BaseModel):
    total_minutes_read: int = 0
    total_books_read: int = 0
    active_students: int = 0
    last_updated: Optional[datetime] = None


class SchoolClass(Record):
    """Class rollup; membership is each student's class_id."""
    school_id: str
    name: str = ""
    stats: Optional[ClassStats] = None
