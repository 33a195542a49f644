"""Parent link codes: verification and bulk issuance."""
from typing import Annotated, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from lumi.api.deps import CurrentUser, client_ip, get_bulk_code_issuer, get_code_verifier
from lumi.config import settings
from lumi.models import BulkLinkCodeOut, LinkCodeOut
from lumi.services.link_codes import BulkCodeIssuer, CodeVerifier

router = APIRouter()


class VerifyCodeRequest(BaseModel):
    code: Optional[Union[str, int]] = None


class VerifyCodeResponse(BaseModel):
    success: bool = True
    code_data: LinkCodeOut


class BulkCodeRequest(BaseModel):
    student_ids: list[str] = Field(default_factory=list)
    school_id: str = ""
    validity_days: int = settings.link_code_validity_days


@router.post("/verify", response_model=VerifyCodeResponse)
async def verify_link_code(
    req: VerifyCodeRequest,
    request: Request,
    verifier: Annotated[CodeVerifier, Depends(get_code_verifier)],
):
    """Check a code a parent typed in; no sign-in needed, rate limited per IP."""
    code_data = await verifier.verify(req.code, client_ip(request))
    return VerifyCodeResponse(code_data=code_data)


@router.post("/bulk", response_model=BulkLinkCodeOut)
async def create_bulk_link_code(
    req: BulkCodeRequest,
    user: CurrentUser,
    issuer: Annotated[BulkCodeIssuer, Depends(get_bulk_code_issuer)],
):
    return await issuer.issue(user.id, req.student_ids, req.school_id, req.validity_days)
