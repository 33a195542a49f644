"""Routes document change events to the reactions that depend on them.

A reading-log write fans out to the student stats, class stats and (on
create) log validation reactions. They run concurrently, none waits for or
depends on another, and each must tolerate being re-run with stale input.
A student update whose stats changed feeds the achievement detector.
"""
import asyncio
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel

from lumi.models import ReadingLog, Student, utcnow
from lumi.models.base import Clock
from lumi.services.achievements import AchievementDetector
from lumi.services.fcm import NotificationDispatcher
from lumi.services.stats import ClassStatsAggregator, StatsAggregator
from lumi.services.validation import LogValidator
from lumi.store import Store

logger = logging.getLogger(__name__)

READING_LOGS = "reading_logs"
STUDENTS = "students"

# Fields only the validator writes; changing them alone does not move stats.
_VALIDATION_FIELDS = {"validation_status", "validation_errors", "validated_at"}


class ChangeEvent(BaseModel):
    collection: str
    operation: Literal["insert", "update", "replace", "delete"]
    document_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


def _only_validation_changed(before: Optional[ReadingLog], after: Optional[ReadingLog]) -> bool:
    if before is None or after is None:
        return False
    return before.model_dump(exclude=_VALIDATION_FIELDS) == after.model_dump(exclude=_VALIDATION_FIELDS)


class TriggerRouter:
    def __init__(
        self,
        stats: StatsAggregator,
        class_stats: ClassStatsAggregator,
        validator: LogValidator,
        achievements: AchievementDetector,
    ):
        self.stats = stats
        self.class_stats = class_stats
        self.validator = validator
        self.achievements = achievements

    @classmethod
    def build(cls, store: Store, dispatcher: NotificationDispatcher, clock: Clock = utcnow) -> "TriggerRouter":
        return cls(
            stats=StatsAggregator(store, clock=clock),
            class_stats=ClassStatsAggregator(store, clock=clock),
            validator=LogValidator(store, clock=clock),
            achievements=AchievementDetector(store, dispatcher, clock=clock),
        )

    async def dispatch(self, event: ChangeEvent) -> None:
        if event.collection == READING_LOGS:
            await self._on_reading_log(event)
        elif event.collection == STUDENTS and event.operation in ("update", "replace"):
            await self._on_student_updated(event)

    async def _on_reading_log(self, event: ChangeEvent) -> None:
        before = ReadingLog.from_mongo(event.before)
        after = ReadingLog.from_mongo(event.after)
        log = after or before
        if log is None:
            logger.warning("Reading log event without document: log_id=%s", event.document_id)
            return
        if event.operation != "insert" and _only_validation_changed(before, after):
            return

        reactions = [
            self.stats.on_log_written(log.school_id, before, after),
            self.class_stats.on_log_written(log.school_id, before, after),
        ]
        if event.operation == "insert" and after is not None:
            reactions.append(self.validator.on_log_created(after))

        # Let every sibling finish before surfacing the first failure.
        results = await asyncio.gather(*reactions, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _on_student_updated(self, event: ChangeEvent) -> None:
        after = Student.from_mongo(event.after)
        if after is None:
            return
        before = Student.from_mongo(event.before)
        if before is not None and before.stats == after.stats:
            return
        await self.achievements.on_student_updated(after.school_id, before, after)


async def dispatch_with_retries(router: TriggerRouter, event: ChangeEvent, max_attempts: int) -> bool:
    """Hosting-runtime retry policy: re-run a failed event, then drop it."""
    for attempt in range(1, max_attempts + 1):
        try:
            await router.dispatch(event)
            return True
        except Exception:
            logger.exception(
                "Trigger failed: collection=%s document_id=%s attempt=%s/%s",
                event.collection,
                event.document_id,
                attempt,
                max_attempts,
            )
            if attempt < max_attempts:
                await asyncio.sleep(0.5 * attempt)
    logger.error("Dropping change event after %s attempts: collection=%s document_id=%s", max_attempts, event.collection, event.document_id)
    return False
