"""Caller identity and push-token registration."""
from fastapi import APIRouter
from pydantic import BaseModel

from lumi.api.deps import CurrentUser, StoreDep

router = APIRouter()


class FCMTokenRequest(BaseModel):
    token: str


@router.get("/me")
async def me(user: CurrentUser):
    return {
        "id": user.id,
        "school_id": user.school_id,
        "role": user.role,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "linked_children": user.linked_children,
    }


@router.post("/fcm-token")
async def register_fcm_token(req: FCMTokenRequest, user: CurrentUser, store: StoreDep):
    # The store keeps only the newest few tokens per user.
    await store.add_fcm_token(user.id, req.token)
    return {"status": "ok"}
