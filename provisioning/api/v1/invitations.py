# provisioning/api/v1/invitations.py

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from provisioning.api.deps import get_invitation_service, require_verified_identity
from provisioning.core.security import get_current_user_id
from provisioning.domain import InvitationPayload
from provisioning.services.invitation_service import (
    InvitationErrorCode,
    InvitationFailure,
    InvitationService,
)
from provisioning.services.invites import InvitationStatus

router = APIRouter(prefix="/invitations", tags=["invitations"])

_FAILURE_STATUS = {
    InvitationErrorCode.NOT_FOUND_OR_EXPIRED: status.HTTP_404_NOT_FOUND,
    InvitationErrorCode.USER_EXISTS: status.HTTP_409_CONFLICT,
    InvitationErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
}


# ---------- Schemas ----------

class InvitationCreateRequest(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    department_id: Optional[str] = None
    position_id: Optional[str] = None
    expires_in_hours: Optional[int] = None
    send_email: bool = True


class InvitationCreateResponse(BaseModel):
    id: str
    email: str
    status: str
    expires_at: Optional[datetime] = None
    token: str  # returned once; also listed while pending
    register_url: str
    email_sent: bool


class InvitationListItem(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    phone: str
    department_id: str
    department_name: Optional[str] = None
    position_id: str
    position_title: Optional[str] = None
    invited_by: str

    # effective status (pending rows past expiry read as expired)
    status: InvitationStatus
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    token: Optional[str] = None


class InvitationRevokeResponse(BaseModel):
    id: str
    status: InvitationStatus
    revoked_at: Optional[datetime] = None


def raise_invitation_failure(result: InvitationFailure) -> None:
    raise HTTPException(
        status_code=_FAILURE_STATUS[result.code],
        detail={"code": result.code.value, "message": result.message},
    )


# ---------- Routes ----------

@router.post("", response_model=InvitationCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    payload: InvitationCreateRequest,
    user_id: str = Depends(require_verified_identity),
    service: InvitationService = Depends(get_invitation_service),
):
    result = await service.issue_invitation(
        user_id,
        InvitationPayload(
            email=payload.email or "",
            first_name=payload.first_name or "",
            last_name=payload.last_name or "",
            phone=payload.phone or "",
            department_id=payload.department_id or "",
            position_id=payload.position_id or "",
            expires_in_hours=payload.expires_in_hours,
        ),
        send_email=payload.send_email,
    )
    if not result.ok:
        raise_invitation_failure(result)

    inv = result.invitation
    return InvitationCreateResponse(
        id=inv.id,
        email=inv.email,
        status=inv.status.value,
        expires_at=inv.expires_at,
        token=result.token,
        register_url=result.register_url,
        email_sent=result.email_sent,
    )


@router.get("", response_model=List[InvitationListItem])
async def list_invitations(
    status_filter: Optional[InvitationStatus] = Query(default=None, alias="status"),
    email: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    service: InvitationService = Depends(get_invitation_service),
):
    result = await service.list_invitations(user_id, status=status_filter, email=email)
    if isinstance(result, InvitationFailure):
        raise_invitation_failure(result)

    return [
        InvitationListItem(
            id=v.id,
            email=v.email,
            first_name=v.first_name,
            last_name=v.last_name,
            phone=v.phone,
            department_id=v.department_id,
            department_name=v.department_name,
            position_id=v.position_id,
            position_title=v.position_title,
            invited_by=v.invited_by,
            status=v.status,
            created_at=v.created_at,
            expires_at=v.expires_at,
            accepted_at=v.accepted_at,
            revoked_at=v.revoked_at,
            token=v.token,
        )
        for v in result
    ]


@router.post("/{invitation_id}/revoke", response_model=InvitationRevokeResponse)
async def revoke_invitation(
    invitation_id: str,
    user_id: str = Depends(require_verified_identity),
    service: InvitationService = Depends(get_invitation_service),
):
    result = await service.revoke_invitation(user_id, invitation_id)
    if not result.ok:
        raise_invitation_failure(result)

    return InvitationRevokeResponse(
        id=result.invitation.id,
        status=result.invitation.status,
        revoked_at=result.invitation.revoked_at,
    )
