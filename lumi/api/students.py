"""Read-only view of the server-computed reading stats."""
from fastapi import APIRouter

from lumi.api.deps import CurrentUser, StoreDep
from lumi.errors import NotFound, PermissionDenied
from lumi.models import User

router = APIRouter()


def _can_view(user: User, school_id: str, student_id: str) -> bool:
    if user.school_id != school_id:
        return False
    return user.is_staff or student_id in user.linked_children


@router.get("/{school_id}/students/{student_id}/stats")
async def student_stats(school_id: str, student_id: str, user: CurrentUser, store: StoreDep):
    if not _can_view(user, school_id, student_id):
        raise PermissionDenied("Not authorized for this student")

    student = await store.get_student(school_id, student_id)
    if not student:
        raise NotFound("Student not found.")

    return {
        "student_id": student.id,
        "full_name": student.full_name,
        "stats": student.stats.model_dump(mode="json") if student.stats else None,
        "achievements": [a.model_dump(mode="json") for a in student.achievements],
    }
