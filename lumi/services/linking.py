"""Parent <-> student links.

Both sides of a link (User.linked_children and Student.parent_ids) are only
ever changed together inside one store transaction.
"""
import logging
from typing import Optional

from lumi.errors import (
    FailedPrecondition,
    InternalError,
    InvalidArgument,
    NotFound,
    ServiceError,
    Unauthenticated,
)
from lumi.models import AuditLogEntry, UserRole, utcnow
from lumi.models.audit import PARENT_SELF_UNLINK
from lumi.models.base import Clock
from lumi.store import Store

logger = logging.getLogger(__name__)


class UnlinkTransaction:
    def __init__(self, store: Store, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def unlink(self, parent_id: Optional[str], student_id: Optional[str], school_id: Optional[str]) -> dict:
        """Remove the calling parent's link to a student, atomically and audited."""
        if not parent_id:
            raise Unauthenticated("You must be logged in to unlink from a student.")
        if not student_id or not school_id:
            raise InvalidArgument("Student ID and School ID are required.")

        try:
            await self._unlink(parent_id, student_id, school_id)
        except ServiceError:
            raise
        except Exception:
            logger.exception(
                "Error unlinking parent from student: parent_id=%s student_id=%s school_id=%s",
                parent_id,
                student_id,
                school_id,
            )
            raise InternalError("An error occurred while unlinking. Please try again.")

        logger.info(
            "Parent unlinked from student: parent_id=%s student_id=%s school_id=%s",
            parent_id,
            student_id,
            school_id,
        )
        return {"success": True, "message": "Successfully unlinked from student."}

    async def _unlink(self, parent_id: str, student_id: str, school_id: str) -> None:
        async with self.store.transaction() as tx:
            parent = await tx.get_user(parent_id)
            if not parent or parent.role != UserRole.PARENT.value or parent.school_id != school_id:
                raise NotFound("Parent account not found.")
            if student_id not in parent.linked_children:
                raise FailedPrecondition("You are not linked to this student.")

            student = await tx.get_student(school_id, student_id)
            if not student:
                raise NotFound("Student not found.")

            await tx.set_parent_ids(school_id, student_id, [pid for pid in student.parent_ids if pid != parent_id])
            await tx.set_linked_children(parent_id, [sid for sid in parent.linked_children if sid != student_id])
            await tx.append_audit(
                AuditLogEntry(
                    type=PARENT_SELF_UNLINK,
                    parent_user_id=parent_id,
                    student_id=student_id,
                    school_id=school_id,
                    timestamp=self.clock(),
                )
            )
