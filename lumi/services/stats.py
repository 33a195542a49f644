"""Authoritative reading statistics for students and classes.

Statistics are never patched incrementally: every reading-log write triggers
a full recomputation from the current log set, so re-delivered or stale
trigger events converge on the same result.
"""
import logging
import math
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from lumi.config import settings
from lumi.models import COUNTED_STATUSES, ClassStats, ReadingLog, StudentStats, utcnow
from lumi.models.base import Clock
from lumi.services.streaks import compute_streaks
from lumi.store import Store

logger = logging.getLogger(__name__)


def reading_zone() -> tzinfo:
    return ZoneInfo(settings.reading_timezone)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_reading_day(value: datetime, tz: tzinfo) -> date:
    return as_utc(value).astimezone(tz).date()


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def affected_student_ids(before: Optional[ReadingLog], after: Optional[ReadingLog]) -> list[str]:
    """Students whose logs changed; an edit can move a log between students."""
    student_ids: list[str] = []
    for log in (after, before):
        if log and log.student_id and log.student_id not in student_ids:
            student_ids.append(log.student_id)
    return student_ids


def build_student_stats(
    logs: Iterable[ReadingLog],
    today: date,
    tz: tzinfo,
    updated_at: Optional[datetime] = None,
) -> StudentStats:
    """Totals are summed per log, streaks and reading days per distinct day."""
    total_minutes = 0
    total_books = 0
    reading_days: set[date] = set()
    last_reading: Optional[datetime] = None

    for log in logs:
        if not log.is_counted:
            continue
        total_minutes += log.minutes_read
        total_books += log.book_count
        if log.date is None:
            continue
        log_date = as_utc(log.date)
        reading_days.add(to_reading_day(log_date, tz))
        if last_reading is None or log_date > last_reading:
            last_reading = log_date

    streaks = compute_streaks(reading_days, today)
    average = 0.0
    if streaks.total_reading_days:
        average = round_half_up(total_minutes / streaks.total_reading_days)

    return StudentStats(
        total_minutes_read=total_minutes,
        total_books_read=total_books,
        current_streak=streaks.current_streak,
        longest_streak=streaks.longest_streak,
        last_reading_date=last_reading,
        average_minutes_per_day=average,
        total_reading_days=streaks.total_reading_days,
        last_updated=updated_at,
    )


def build_class_stats(logs: Iterable[ReadingLog], updated_at: Optional[datetime] = None) -> ClassStats:
    total_minutes = 0
    total_books = 0
    active_students: set[str] = set()
    for log in logs:
        total_minutes += log.minutes_read
        total_books += log.book_count
        if log.student_id:
            active_students.add(log.student_id)
    return ClassStats(
        total_minutes_read=total_minutes,
        total_books_read=total_books,
        active_students=len(active_students),
        last_updated=updated_at,
    )


class StatsAggregator:
    """Owns Student.stats; recomputes it from every counted log of the student."""

    def __init__(self, store: Store, clock: Clock = utcnow, tz: Optional[tzinfo] = None):
        self.store = store
        self.clock = clock
        self.tz = tz or reading_zone()

    async def recompute(self, school_id: str, student_id: str) -> Optional[StudentStats]:
        logs = await self.store.list_reading_logs(school_id, [student_id], statuses=COUNTED_STATUSES)
        now = self.clock()
        stats = build_student_stats(logs, today=to_reading_day(now, self.tz), tz=self.tz, updated_at=now)

        if not await self.store.update_student_stats(school_id, student_id, stats):
            logger.warning("Stats not written, student not found: student_id=%s school_id=%s", student_id, school_id)
            return None

        logger.info(
            "Student stats aggregated: student_id=%s total_minutes=%s total_books=%s current_streak=%s",
            student_id,
            stats.total_minutes_read,
            stats.total_books_read,
            stats.current_streak,
        )
        return stats

    async def on_log_written(
        self,
        school_id: str,
        before: Optional[ReadingLog],
        after: Optional[ReadingLog],
    ) -> dict[str, Optional[StudentStats]]:
        """React to a create (before is None), update or delete (after is None)."""
        student_ids = affected_student_ids(before, after)
        if not student_ids:
            log = after or before
            logger.warning("Reading log has no student_id: log_id=%s", log.id if log else None)
            return {}

        results: dict[str, Optional[StudentStats]] = {}
        for student_id in student_ids:
            try:
                results[student_id] = await self.recompute(school_id, student_id)
            except Exception:
                logger.exception("Error aggregating student stats: student_id=%s school_id=%s", student_id, school_id)
                raise
        return results


class ClassStatsAggregator:
    """Rolls the logs of every student in a class up into SchoolClass.stats."""

    def __init__(self, store: Store, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def recompute(self, school_id: str, class_id: str) -> Optional[ClassStats]:
        members = await self.store.list_students(school_id, class_id=class_id)
        logs = await self.store.list_reading_logs(school_id, [s.id for s in members])
        stats = build_class_stats(logs, updated_at=self.clock())

        if not await self.store.update_class_stats(school_id, class_id, stats):
            logger.warning("Class stats not written, class not found: class_id=%s school_id=%s", class_id, school_id)
            return None

        logger.info(
            "Class stats aggregated: class_id=%s total_minutes=%s active_students=%s",
            class_id,
            stats.total_minutes_read,
            stats.active_students,
        )
        return stats

    async def on_log_written(
        self,
        school_id: str,
        before: Optional[ReadingLog],
        after: Optional[ReadingLog],
    ) -> dict[str, Optional[ClassStats]]:
        class_ids: list[str] = []
        for student_id in affected_student_ids(before, after):
            student = await self.store.get_student(school_id, student_id)
            if not student or not student.class_id:
                logger.debug("No class assignment, skipping class stats: student_id=%s", student_id)
                continue
            if student.class_id not in class_ids:
                class_ids.append(student.class_id)

        results: dict[str, Optional[ClassStats]] = {}
        for class_id in class_ids:
            try:
                results[class_id] = await self.recompute(school_id, class_id)
            except Exception:
                logger.exception("Error aggregating class stats: class_id=%s school_id=%s", class_id, school_id)
                raise
        return results
