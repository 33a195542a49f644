"""Shared record base: string ids persisted as the Mongo `_id`."""
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


class Record(BaseModel):
    """Document stored in its own collection."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str = Field(default_factory=new_id, alias="_id")

    def to_mongo(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_mongo(cls, raw: Optional[dict[str, Any]]):
        if not raw:
            return None
        return cls.model_validate(raw)
