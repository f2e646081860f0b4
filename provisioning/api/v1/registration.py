# provisioning/api/v1/registration.py

from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from provisioning.api.deps import get_invitation_service
from provisioning.api.v1.invitations import raise_invitation_failure
from provisioning.core.rate_limit import register_rate_limit
from provisioning.services.invitation_service import InvitationService

router = APIRouter(tags=["registration"])


class RegisterRequest(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


class RegisterResponse(BaseModel):
    user_id: str
    email: str
    invitation_id: str


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(register_rate_limit)],
)
async def register(
    payload: RegisterRequest,
    service: InvitationService = Depends(get_invitation_service),
):
    """
    Redeem an invitation token: creates the account and its membership and
    marks the invitation accepted, all or nothing.
    """
    result = await service.redeem_invitation(payload.token or "", payload.password or "")
    if not result.ok:
        raise_invitation_failure(result)

    return RegisterResponse(
        user_id=result.account.id,
        email=result.account.email,
        invitation_id=result.invitation.id,
    )
