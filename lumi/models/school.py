from pydantic import BaseModel, Field

from lumi.models.base import Record


class QuietHours(BaseModel):
    enabled: bool = False
    start: int = 21  # hour of day, reminders suppressed from here...
    end: int = 7  # ...until here


class School(Record):
    name: str = ""
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
