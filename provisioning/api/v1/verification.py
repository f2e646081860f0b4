# provisioning/api/v1/verification.py

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from provisioning.api.deps import get_request_metadata, get_verification_service
from provisioning.core.security import get_current_user_id
from provisioning.core.verification import VerificationErrorCode
from provisioning.domain import RequestMetadata
from provisioning.services.verification_service import (
    VerificationFailure,
    VerificationResult,
    VerificationService,
)

router = APIRouter(prefix="/auth", tags=["verification"])


# ---------- Schemas ----------

class EmailConfirmRequest(BaseModel):
    token: Optional[str] = None


class PhoneConfirmRequest(BaseModel):
    code: Optional[str] = None


class VerificationResponse(BaseModel):
    status: str = "ok"
    kind: str
    already_verified: bool = False
    verified: bool = False
    expires_at: Optional[datetime] = None
    dev_code: Optional[str] = None
    dev_verify_url: Optional[str] = None


class VerificationStatusResponse(BaseModel):
    requirements_met: bool
    missing: List[str]


# ---------- Helpers ----------

def _raise_failure(result: VerificationFailure) -> None:
    code = (
        status.HTTP_429_TOO_MANY_REQUESTS
        if result.code == VerificationErrorCode.RATE_LIMITED
        else status.HTTP_400_BAD_REQUEST
    )
    detail = {"code": result.code.value, "message": result.message}
    if result.attempts is not None:
        detail["attempts"] = result.attempts
        detail["max_attempts"] = result.max_attempts
    raise HTTPException(status_code=code, detail=detail)


def _to_response(result: VerificationResult) -> VerificationResponse:
    if not result.ok:
        _raise_failure(result)
    return VerificationResponse(
        kind=result.kind.value,
        already_verified=result.already_verified,
        verified=result.verified,
        expires_at=result.expires_at,
        dev_code=result.dev_secret,
        dev_verify_url=result.dev_verify_url,
    )


# ---------- Routes ----------

@router.post("/email/verify/request", response_model=VerificationResponse)
async def request_email_verification(
    user_id: str = Depends(get_current_user_id),
    metadata: RequestMetadata = Depends(get_request_metadata),
    service: VerificationService = Depends(get_verification_service),
):
    result = await service.request_email_verification(user_id, metadata)
    return _to_response(result)


@router.post("/email/verify/confirm", response_model=VerificationResponse)
async def confirm_email_verification(
    payload: EmailConfirmRequest,
    metadata: RequestMetadata = Depends(get_request_metadata),
    service: VerificationService = Depends(get_verification_service),
):
    # No bearer token: the link is opened from the inbox.
    result = await service.confirm_email_verification(payload.token or "", metadata)
    return _to_response(result)


@router.post("/phone/verify/request", response_model=VerificationResponse)
async def request_phone_verification(
    user_id: str = Depends(get_current_user_id),
    metadata: RequestMetadata = Depends(get_request_metadata),
    service: VerificationService = Depends(get_verification_service),
):
    result = await service.request_phone_verification(user_id, metadata)
    return _to_response(result)


@router.post("/phone/verify/confirm", response_model=VerificationResponse)
async def confirm_phone_verification(
    payload: PhoneConfirmRequest,
    user_id: str = Depends(get_current_user_id),
    metadata: RequestMetadata = Depends(get_request_metadata),
    service: VerificationService = Depends(get_verification_service),
):
    result = await service.confirm_phone_verification(user_id, payload.code or "", metadata)
    return _to_response(result)


@router.get("/verification/status", response_model=VerificationStatusResponse)
async def verification_status(
    user_id: str = Depends(get_current_user_id),
    service: VerificationService = Depends(get_verification_service),
):
    missing = await service.missing_requirements(user_id)
    return VerificationStatusResponse(
        requirements_met=not missing,
        missing=[k.value for k in missing],
    )
