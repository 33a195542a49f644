"""Milestone achievements derived from changes to a student's stats."""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from lumi.models import Achievement, Student, StudentStats, utcnow
from lumi.models.base import Clock
from lumi.services.fcm import NotificationDispatcher, notify_parents
from lumi.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Milestone:
    metric: str  # StudentStats field
    threshold: int
    id: str
    name: str
    description: str
    icon: str

    def crossed(self, old: Optional[StudentStats], new: Optional[StudentStats]) -> bool:
        """True only on the transition from below the threshold to at/above it."""
        old_value = getattr(old, self.metric, 0) if old else 0
        new_value = getattr(new, self.metric, 0) if new else 0
        return old_value < self.threshold <= new_value

    def award(self, earned_at) -> Achievement:
        return Achievement(
            id=self.id,
            name=self.name,
            description=self.description,
            icon=self.icon,
            earned_at=earned_at,
        )


MILESTONES: tuple[Milestone, ...] = (
    Milestone("current_streak", 7, "week_streak", "Week Warrior", "Read for 7 days in a row!", "🔥"),
    Milestone("current_streak", 30, "month_streak", "Monthly Master", "Read for 30 days in a row!", "🌟"),
    Milestone("total_books_read", 10, "ten_books", "Book Collector", "Read 10 books!", "📚"),
    Milestone("total_books_read", 50, "fifty_books", "Bookworm", "Read 50 books!", "🐛"),
    Milestone("total_minutes_read", 600, "ten_hours", "Time Traveler", "Read for 10 hours total!", "⏰"),
)


def crossed_milestones(old: Optional[StudentStats], new: Optional[StudentStats]) -> list[Milestone]:
    return [m for m in MILESTONES if m.crossed(old, new)]


def achievements_payload(achievements: list[Achievement]) -> str:
    return json.dumps(
        [a.model_dump(include={"id", "name", "description", "icon"}) for a in achievements],
        ensure_ascii=False,
    )


class AchievementDetector:
    def __init__(self, store: Store, dispatcher: NotificationDispatcher, clock: Clock = utcnow):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock

    async def on_student_updated(
        self,
        school_id: str,
        before: Optional[Student],
        after: Student,
    ) -> list[Achievement]:
        """Persist newly crossed milestones, then tell the parents.

        Returns the achievements actually appended; a repeated transition
        appends nothing because the ids are already on the student.
        """
        milestones = crossed_milestones(before.stats if before else None, after.stats)
        if not milestones:
            return []

        earned_at = self.clock()
        already_earned = after.achievement_ids()
        candidates = [m.award(earned_at) for m in milestones if m.id not in already_earned]
        if not candidates:
            return []

        appended = await self.store.append_achievements(school_id, after.id, candidates)
        if not appended:
            return []
        logger.info(
            "Achievements earned: student_id=%s school_id=%s achievements=%s",
            after.id,
            school_id,
            [a.id for a in appended],
        )

        await notify_parents(
            self.store,
            self.dispatcher,
            after.parent_ids,
            title=f"{after.first_name} earned new achievements! 🎉",
            body=", ".join(a.name for a in appended),
            data={
                "type": "achievement_earned",
                "student_id": after.id,
                "school_id": school_id,
                "achievements": achievements_payload(appended),
            },
        )
        return appended
