"""Parent self-service on parent/student links."""
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from lumi.api.deps import CurrentUser, get_unlink_transaction
from lumi.services.linking import UnlinkTransaction

router = APIRouter()


class UnlinkRequest(BaseModel):
    student_id: str = ""
    school_id: str = ""


class UnlinkResponse(BaseModel):
    success: bool
    message: str


@router.post("/unlink", response_model=UnlinkResponse)
async def unlink_parent_from_student(
    req: UnlinkRequest,
    user: CurrentUser,
    unlink: Annotated[UnlinkTransaction, Depends(get_unlink_transaction)],
):
    """Parent removes their own link to a student."""
    return await unlink.unlink(user.id, req.student_id, req.school_id)
