"""Timer-driven sweeps, run by an external scheduler.

    python -m lumi.jobs reminders      # evenings, per school quiet hours apply
    python -m lumi.jobs expire-codes   # nightly
"""
import asyncio
import logging
import sys
from datetime import datetime, time
from typing import Optional

from lumi.models import School, utcnow
from lumi.services.fcm import NotificationDispatcher, notify_parents
from lumi.services.stats import as_utc, reading_zone
from lumi.store import Store

logger = logging.getLogger(__name__)


def in_quiet_hours(school: School, hour: int) -> bool:
    quiet = school.quiet_hours
    if not quiet.enabled:
        return False
    return hour >= quiet.start or hour < quiet.end


async def send_reading_reminders(store: Store, dispatcher: NotificationDispatcher, now: Optional[datetime] = None) -> int:
    """Remind parents of students who have not logged any reading today."""
    tz = reading_zone()
    local_now = as_utc(now or utcnow()).astimezone(tz)
    start_of_day = datetime.combine(local_now.date(), time.min, tzinfo=tz)

    logger.info("Starting daily reading reminders")
    sent = 0
    for school in await store.list_schools():
        if in_quiet_hours(school, local_now.hour):
            logger.info("Skipping %s - quiet hours active", school.id)
            continue

        for student in await store.list_students(school.id):
            if not student.parent_ids:
                continue
            if await store.has_reading_log_since(school.id, student.id, start_of_day):
                continue
            sent += await notify_parents(
                store,
                dispatcher,
                student.parent_ids,
                title="Time to read with Lumi! 📚",
                body=f"Don't forget to log {student.first_name}'s reading today!",
                data={"type": "reading_reminder", "student_id": student.id, "school_id": school.id},
            )
    logger.info("Reading reminders sent: %s", sent)
    return sent


async def expire_link_codes(store: Store, now: Optional[datetime] = None) -> int:
    count = await store.expire_link_codes(now or utcnow())
    if count:
        logger.info("Expired %s link codes", count)
    return count


async def _run(job: str) -> int:
    from lumi.db import MongoStore, db_shutdown, db_startup
    from lumi.services.fcm import FcmDispatcher

    database = await db_startup()
    try:
        store = MongoStore(database)
        if job == "reminders":
            return await send_reading_reminders(store, FcmDispatcher())
        return await expire_link_codes(store)
    finally:
        await db_shutdown()


def main(argv: list[str]) -> int:
    jobs = ("reminders", "expire-codes")
    if len(argv) != 1 or argv[0] not in jobs:
        print(f"usage: python -m lumi.jobs {{{','.join(jobs)}}}", file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_run(argv[0]))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
