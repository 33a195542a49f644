"""Business-rule checks on newly created reading logs.

Validation only annotates the log; it does not hold back the statistics,
which are recomputed independently from the same write.
"""
import logging

from lumi.config import settings
from lumi.models import ReadingLog, ValidationStatus, utcnow
from lumi.models.base import Clock
from lumi.store import Store

logger = logging.getLogger(__name__)


class LogValidator:
    def __init__(
        self,
        store: Store,
        clock: Clock = utcnow,
        min_minutes: int = settings.min_minutes_per_log,
        max_minutes: int = settings.max_minutes_per_log,
    ):
        self.store = store
        self.clock = clock
        self.min_minutes = min_minutes
        self.max_minutes = max_minutes

    async def check(self, log: ReadingLog) -> list[str]:
        """Human-readable reasons the log is invalid; empty when it is valid."""
        errors: list[str] = []
        if not self.min_minutes <= log.minutes_read <= self.max_minutes:
            errors.append(f"Minutes read must be between {self.min_minutes} and {self.max_minutes}")

        student = None
        if log.student_id:
            student = await self.store.get_student(log.school_id, log.student_id)
        if not student:
            errors.append("Student does not exist")
        elif log.parent_id not in student.parent_ids:
            errors.append("Parent not linked to this student")
        return errors

    async def on_log_created(self, log: ReadingLog) -> ValidationStatus:
        errors = await self.check(log)
        if errors:
            await self.store.set_log_validation(log.school_id, log.id, ValidationStatus.INVALID, errors)
            logger.warning("Invalid reading log detected: log_id=%s errors=%s", log.id, errors)
            return ValidationStatus.INVALID

        await self.store.set_log_validation(log.school_id, log.id, ValidationStatus.VALID, [], validated_at=self.clock())
        return ValidationStatus.VALID
